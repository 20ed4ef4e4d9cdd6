"""
WebSocket Routes
================
WebSocket endpoint for real-time task updates and clarification dialogs.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api import state as api_state
from api.types import ClientRegistrationPayload, QuestionResponsePayload, WebSocketMessage
from planner_types import MessageType
from planning.clarification import ClarificationRequest, clarification_to_payload, detect_clarification_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


async def _send_error(websocket: WebSocket, code: str, message: str, feature_id=None):
    error = {"type": MessageType.ERROR.value, "payload": {"code": code, "message": message}}
    if feature_id:
        error["featureId"] = feature_id
    await api_state.manager.send_to(websocket, error)


async def _register(websocket: WebSocket, message: WebSocketMessage):
    payload = ClientRegistrationPayload.model_validate(message.payload or {})
    feature_id = message.featureId or payload.featureId
    if not feature_id:
        await _send_error(websocket, "INVALID_REGISTRATION", "client_registration requires a featureId")
        return
    api_state.manager.register_client(websocket, feature_id, payload.clientId)

    # A client that reconnects while a question is pending gets it again
    pending = await api_state.get_context().state_store.get_by_feature(feature_id)
    if pending is not None:
        question = _pending_question_payload(pending)
        await api_state.manager.send_to(websocket, {
            "type": MessageType.SHOW_QUESTION.value,
            "featureId": feature_id,
            "payload": question,
        })


def _pending_question_payload(state) -> dict:
    request = detect_clarification_request(state.partial_response)
    if request is None:
        request = ClarificationRequest(question=state.partial_response)
    return clarification_to_payload(state.question_id, request)


async def _handle(websocket: WebSocket, message: WebSocketMessage):
    if message.type == MessageType.CLIENT_REGISTRATION:
        await _register(websocket, message)

    elif message.type == MessageType.QUESTION_RESPONSE:
        if not message.featureId:
            await _send_error(websocket, "INVALID_RESPONSE", "question_response requires a featureId")
            return
        payload = QuestionResponsePayload.model_validate(message.payload or {})
        await api_state.get_context().pipeline.handle_question_response(
            message.featureId, payload.questionId, payload.response,
        )

    elif message.type == MessageType.REQUEST_SCREENSHOT_ACK:
        logger.info(f"Screenshot request acknowledged for feature {message.featureId}: {message.payload}")

    else:
        logger.warning(f"Ignoring client message of type {message.type.value}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates."""
    manager = api_state.manager
    await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = WebSocketMessage.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                logger.warning(f"Invalid websocket message: {e}")
                await _send_error(websocket, "MESSAGE_PARSING_ERROR", "Invalid message format")
                continue

            try:
                await _handle(websocket, message)
            except Exception as e:
                logger.error(f"❌ Error handling {message.type.value} message: {e}")
                await _send_error(websocket, "INTERNAL_ERROR",
                                  "An internal error occurred while processing your message.",
                                  feature_id=message.featureId)
    except WebSocketDisconnect:
        manager.disconnect(websocket)
