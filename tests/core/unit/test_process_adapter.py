from __future__ import annotations

import sys

import pytest

from kiln.core.adapters.process import ProcessExecutionError, run_exec_capture, run_exec_checked


async def test_capture_returns_output_and_returncode() -> None:
    result = await run_exec_capture(sys.executable, "-c", "print('hi')")

    assert result.returncode == 0
    assert result.stdout_text().strip() == "hi"


async def test_capture_runs_in_cwd(tmp_path) -> None:
    result = await run_exec_capture(sys.executable, "-c", "import os; print(os.getcwd())", cwd=tmp_path)

    assert result.stdout_text().strip() == str(tmp_path.resolve())


async def test_checked_raises_structured_error_on_nonzero_exit() -> None:
    with pytest.raises(ProcessExecutionError) as excinfo:
        await run_exec_checked(
            sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"
        )

    assert excinfo.value.code == "PROCESS_NONZERO_EXIT"
    assert excinfo.value.returncode == 3
    assert excinfo.value.stderr == "bad"


async def test_checked_reports_timeouts() -> None:
    with pytest.raises(ProcessExecutionError) as excinfo:
        await run_exec_checked(sys.executable, "-c", "import time; time.sleep(10)", timeout=0.2)

    assert excinfo.value.code == "PROCESS_TIMEOUT"
    assert excinfo.value.timed_out


async def test_checked_reports_missing_executable() -> None:
    with pytest.raises(ProcessExecutionError) as excinfo:
        await run_exec_checked("definitely-not-a-real-binary-kiln")

    assert excinfo.value.code == "PROCESS_OS_ERROR"
