"""
Checkout endpoints.

POST /v1/checkout/sessions     start a hosted Cayman checkout
GET  /v1/checkout/return       customer lands here after paying (JSON or HTML)
GET  /v1/checkout/sessions/id  session state
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse

from api.deps import ServiceContainer, get_services
from api.pages import render_status_page
from pipeline.checkout import CheckoutError
from schemas.checkout import CheckoutRequest

logger = structlog.get_logger().bind(component="checkout_api")

router = APIRouter(prefix="/v1/checkout", tags=["checkout"])


def prefers_html(accept: Optional[str]) -> bool:
    """True when text/html is listed in Accept before any JSON type."""
    for part in (accept or "").split(","):
        media_type = part.split(";")[0].strip().lower()
        if media_type in ("text/html", "application/xhtml+xml"):
            return True
        if media_type == "application/json" or media_type.endswith("+json"):
            return False
    return False


def _error(e: CheckoutError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=e.to_response())


@router.post("/sessions", status_code=201)
async def create_checkout_session(
    request: CheckoutRequest,
    services: ServiceContainer = Depends(get_services),
):
    try:
        response = await services.checkout.create_session(request)
    except CheckoutError as e:
        return _error(e)
    return response.model_dump(by_alias=True)


@router.get("/return")
async def checkout_return(
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    query = {key: request.query_params.getlist(key) for key in request.query_params.keys()}
    try:
        outcome = await services.checkout.handle_return(
            request.query_params.getlist("sessionId"),
            query,
            raw_query=request.url.query,
        )
    except CheckoutError as e:
        return _error(e)

    if prefers_html(request.headers.get("accept")):
        return HTMLResponse(render_status_page(outcome, services.settings))
    return outcome.to_response()


@router.get("/sessions/{session_id}")
async def get_checkout_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    session = await services.checkout.get_session(session_id)
    if session is None:
        return JSONResponse(status_code=404, content={"error": "session_not_found", "sessionId": session_id})
    return session.to_public()
