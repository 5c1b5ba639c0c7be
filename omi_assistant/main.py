import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from omi_assistant.config import settings
from omi_assistant.dependencies import build_runtime
from omi_assistant.logging_config import get_logger, setup_logging
from omi_assistant.routers import status, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Omi Assistant API",
    description="Webhook service that answers Omi device users when the assistant is addressed",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(status.router)

queue_logger = get_logger("queue_worker")


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.queue_enabled and _is_env_enabled(os.environ.get("QUEUE_WORKER_ENABLED"), default=True)


@app.on_event("startup")
def start_runtime() -> None:
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(settings)
    if not _is_queue_worker_enabled():
        return
    app.state.runtime.queue.start()
    queue_logger.info("Queue worker started")


@app.on_event("shutdown")
def stop_runtime() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return
    abandoned = runtime.queue.stop(timeout=settings.queue_shutdown_timeout_seconds)
    runtime.orchestrator.shutdown()
    queue_logger.info("Queue worker stopped", extra={"context": {"abandoned": abandoned}})


@app.get("/health")
async def health():
    return {"status": "ok"}
