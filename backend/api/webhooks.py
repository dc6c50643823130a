"""
Cayman webhook endpoint.

Signature check over the raw bytes, then normalize, dedupe by event id and
hand off to the fulfillment pipeline. Only a bad signature or an unparseable
body is rejected (HTTP 400); every other outcome is acknowledged with 200 so
the gateway stops re-delivering.
"""

import json
from typing import Any, Dict
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.deps import ServiceContainer, get_services
from pipeline.normalizer import normalize_notification
from pipeline.signature import verify_signature
from schemas.checkout import ErrorCode, NotificationResult, NotificationStatus

logger = structlog.get_logger().bind(component="webhooks")

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "Cayman-Signature"


class MalformedPayload(ValueError):
    pass


def parse_body(raw: bytes, content_type: str) -> Dict[str, Any]:
    """Decode a JSON or form-encoded webhook body into a dict."""
    if not raw.strip():
        return {}

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPayload("body is not valid UTF-8") from e

    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=False))

    try:
        body = json.loads(text)
    except ValueError as e:
        raise MalformedPayload(f"body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedPayload("body must be a JSON object")
    return body


def _rejected(error_code: ErrorCode, detail: str, session_id=None) -> JSONResponse:
    result = NotificationResult(
        status=NotificationStatus.FAILED,
        session_id=session_id,
        error_code=error_code,
        detail=detail,
    )
    return JSONResponse(status_code=400, content=result.to_response())


@router.post("/webhooks/cayman")
async def cayman_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    raw = await request.body()
    query_session = request.query_params.get("sessionId")

    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), services.credentials.webhook_secret()):
        logger.warning("webhook_signature_invalid", session_id=query_session, size=len(raw))
        return _rejected(ErrorCode.SIGNATURE_INVALID, "invalid signature", query_session)

    try:
        body = parse_body(raw, request.headers.get("content-type", "").lower())
    except MalformedPayload as e:
        logger.warning("webhook_malformed_payload", session_id=query_session, error=str(e))
        return _rejected(ErrorCode.MALFORMED_PAYLOAD, str(e), query_session)

    query = {key: request.query_params.getlist(key) for key in request.query_params.keys()}
    notification = normalize_notification(
        query=query,
        body=body,
        raw_query=request.url.query,
        source="webhook",
    )

    key = notification.idempotency_key
    if key and not await services.guard.once(key):
        logger.info(
            "webhook_deduped",
            session_id=notification.session_id,
            event_id=notification.event_id,
            error_code=ErrorCode.DUPLICATE_EVENT.value,
        )
        return NotificationResult(
            status=NotificationStatus.DEDUPED,
            session_id=notification.session_id,
        ).to_response(ok=True, deduped=True)

    try:
        result = await services.orchestrator.process(notification)
    except Exception as e:
        logger.exception(
            "webhook_processing_failed",
            session_id=notification.session_id,
            event_id=notification.event_id,
        )
        result = NotificationResult(
            status=NotificationStatus.FAILED,
            session_id=notification.session_id,
            detail=str(e) or "webhook processing failed",
        )

    return result.to_response()
