from typing import Mapping

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import ClientDisconnect

from omi_assistant.dependencies import get_orchestrator
from omi_assistant.logging_config import get_logger
from omi_assistant.schemas.webhook import WebhookRequest
from omi_assistant.services.errors import ValidationError
from omi_assistant.services.webhook_orchestrator import WebhookOrchestrator

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])


def parse_webhook_payload(payload: object, query_params: Mapping[str, str]) -> WebhookRequest:
    """Build a WebhookRequest from the JSON body, filling ids from the query string."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload format")

    payload = dict(payload)
    if not any(payload.get(key) for key in ("sessionId", "session_id")) and query_params.get("session_id"):
        payload["session_id"] = query_params["session_id"]
    if not any(payload.get(key) for key in ("deviceUserId", "uid", "user_id")) and query_params.get("uid"):
        payload["uid"] = query_params["uid"]

    try:
        return WebhookRequest.model_validate(payload)
    except PydanticValidationError as exc:
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ValidationError("Invalid webhook payload", fields=fields) from exc


async def _read_json(request: Request) -> object:
    try:
        return await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Client disconnected")
    except Exception as exc:
        raw = await request.body()
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")


@router.post("/webhook")
@router.post("/omi-webhook")
async def handle_webhook(
    http_request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: WebhookOrchestrator = Depends(get_orchestrator),
):
    """Receive a batch of transcript fragments and answer if the assistant was addressed."""
    payload = await _read_json(http_request)
    try:
        webhook_request = parse_webhook_payload(payload, http_request.query_params)
        outcome = await run_in_threadpool(orchestrator.handle, webhook_request)
    except ValidationError as exc:
        logger.info("Webhook rejected", extra={"context": {"error": exc.message, "fields": exc.fields}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    background_tasks.add_task(orchestrator.finalize, outcome)
    return outcome.to_response()
