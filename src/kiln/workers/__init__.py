"""HTTP worker programs that run inside job containers.

Both are FastAPI apps served by uvicorn on ``WORKER_CONTAINER_PORT``; the
orchestrator talks to them through ``kiln.core.adapters.control``.
"""
