import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from services.relay.app.auth import require_auth
from services.relay.app.config import RelaySettings
from services.relay.app.context import bind_session_key
from services.relay.app.errors import RelayError, RequestCancelled
from services.relay.app.models import CancelRequest, QuestionRequest
from services.relay.app.relay import STREAMING_HEADERS, StreamingSession
from services.relay.app.session import resolve_session_key, sanitize_session_key
from services.relay.app.telemetry import enrich_current_span
from services.relay.app.validation import validate_question_request

logger = logging.getLogger(__name__)

router = APIRouter()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _read_json(request: Request) -> Tuple[Any, Optional[JSONResponse]]:
    try:
        return await request.json(), None
    except ValueError:
        return None, error_response(400, "Invalid JSON body")


async def _parse_question(request: Request, settings: RelaySettings) -> Tuple[Optional[QuestionRequest], Optional[JSONResponse]]:
    body, error = await _read_json(request)
    if error is not None:
        return None, error
    result = validate_question_request(body, settings.max_file_chars)
    if not result:
        logger.info(f"Rejected question request: {result.message}")
        return None, error_response(400, result.message)
    try:
        return QuestionRequest.model_validate(body), None
    except ValidationError as e:
        logger.info(f"Rejected question request: {e.error_count()} field errors")
        return None, error_response(400, "Invalid request body")


@router.post("/submit-question-stream", dependencies=[Depends(require_auth)])
async def submit_question_stream(request: Request):
    """Start a streaming session and relay the backend's answer as server-sent events."""
    settings: RelaySettings = request.app.state.settings
    question, error = await _parse_question(request, settings)
    if error is not None:
        return error
    if not settings.streaming_configured:
        logger.error("Streaming upstream is not configured (RELAY_UPSTREAM_URL / RELAY_UPSTREAM_API_KEY)")
        return error_response(500, "Server configuration error")

    session_id = resolve_session_key(question.sessionkey)
    bind_session_key(sanitize_session_key(session_id))
    enrich_current_span({"session_id": session_id})

    session = StreamingSession(
        request.app.state.connector,
        request.app.state.registry,
        request.app.state.cancel_store,
        settings,
        question,
        session_id=session_id,
        user_agent=request.headers.get("user-agent"),
    )
    logger.info(f"Starting streaming session {session_id}")
    return StreamingResponse(session.frames(), media_type="text/event-stream", headers=STREAMING_HEADERS)


@router.post("/submit-question", dependencies=[Depends(require_auth)])
async def submit_question(request: Request):
    """Long-poll variant: submit, poll until answered, return the answer as JSON."""
    settings: RelaySettings = request.app.state.settings
    question, error = await _parse_question(request, settings)
    if error is not None:
        return error

    session_key = resolve_session_key(question.sessionkey)
    bind_session_key(sanitize_session_key(session_key))
    enrich_current_span({"session_id": session_key})

    try:
        answer = await request.app.state.poller.submit(question, session_key=session_key)
    except RequestCancelled as e:
        return error_response(499, str(e))
    except RelayError as e:
        logger.error(f"Long-poll session {session_key} failed: {e}")
        return error_response(500, str(e))
    return {"success": True, "data": answer.model_dump()}


@router.post("/cancel-request", dependencies=[Depends(require_auth)])
async def cancel_request(request: Request):
    """
    Cancel a streaming or long-poll session. Answers success whether or
    not the session exists, so callers cannot probe for live sessions.
    """
    body, error = await _read_json(request)
    if error is not None:
        return error
    try:
        cancel = CancelRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError:
        return error_response(400, "Invalid request body")
    if not cancel.sessionkey:
        return error_response(400, "Missing required field: sessionkey")

    key = sanitize_session_key(cancel.sessionkey)
    bind_session_key(key)
    # Flag first: a local session cleans the flag up when it stops
    await request.app.state.cancel_store.mark_cancelled(cancel.sessionkey)
    found = request.app.state.registry.cancel(cancel.sessionkey)
    logger.info(f"Cancellation requested for session {key} (local session found: {found})")
    return {"success": True, "message": "Cancellation requested"}
