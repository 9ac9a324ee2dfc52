"""Timeouts, intervals and size caps - no circular dependencies.

These encode the failure-detection latency budget of the control plane.
Each one is the default for a config field in ``kiln.core.config``.
"""

from __future__ import annotations

RUNTIME_PROBE_TTL_SECONDS = 30.0
RUNTIME_PROBE_TIMEOUT_SECONDS = 5.0

CONTAINER_SPAWN_TIMEOUT_SECONDS = 30.0
CONTAINER_STOP_TIMEOUT_SECONDS = 15.0
CONTAINER_REMOVE_TIMEOUT_SECONDS = 15.0
CONTAINER_LIST_TIMEOUT_SECONDS = 10.0
CONTAINER_STOP_GRACE_SECONDS = 10

HEALTH_REQUEST_TIMEOUT_SECONDS = 5.0
JOB_RUN_TIMEOUT_SECONDS = 600.0
CONTROL_REQUEST_TIMEOUT_SECONDS = 10.0
WORKSPACE_REQUEST_TIMEOUT_SECONDS = 300.0

WARM_HEALTH_INTERVAL_SECONDS = 30.0
WARM_STARTUP_TIMEOUT_SECONDS = 180.0
WARM_STARTUP_POLL_SECONDS = 3.0
WARM_MAX_CONSECUTIVE_FAILURES = 3
WARM_REVIVE_MAX_ATTEMPTS = 3
WARM_REVIVE_BACKOFF_SECONDS = 60.0

WORKSPACE_HEALTH_INTERVAL_SECONDS = 30.0
WORKSPACE_STARTUP_TIMEOUT_SECONDS = 120.0
WORKSPACE_STARTUP_POLL_SECONDS = 2.0

MAX_JOB_LOG_BYTES = 512 * 1024
JOB_ERROR_TAIL_CHARS = 500
JOB_ID_SHORT_LENGTH = 8

WORKER_CONTAINER_PORT = 8080
MAX_LOG_MESSAGE_LENGTH = 4096
