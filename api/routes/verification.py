"""
Verification API Routes

This module provides the WebSocket endpoint that re-verifies a passenger at
boarding time against the reference set saved during enrollment.

Each capture produces exactly one verdict. A failed match leaves the camera
live for another attempt; a successful match closes the session on its own
after the configured grace delay, signalled by a session_closed message.
Every verdict is recorded in the verification log.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.routes.outbox import SocketOutbox
from api.schemas import (
    ErrorMessage,
    SessionClosedMessage,
    SessionStateMessage,
    VerdictMessage,
    VerificationClientMessage,
)
from facegate.camera import LatestFrameSource, frame_from_base64
from facegate.config import get_config
from facegate.errors import FaceGateError, NoReferenceError
from facegate.gate import FaceGate, get_embedder
from facegate.reference_store import get_reference_store
from facegate.verification import NO_REFERENCE_MESSAGE, VerificationSession, VerificationVerdict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["verification"])


async def _receive_unless_closed(websocket: WebSocket, closed: asyncio.Event) -> Optional[dict]:
    """
    Wait for the next client message, or for the session to close itself.

    Returns:
        The decoded JSON message, or None once the session has closed.
    """
    receive = asyncio.create_task(websocket.receive_json())
    waiter = asyncio.create_task(closed.wait())
    done, _ = await asyncio.wait({receive, waiter}, return_when=asyncio.FIRST_COMPLETED)
    waiter.cancel()

    if receive not in done:
        receive.cancel()
        return None
    return receive.result()


@router.websocket("/verify/{passenger_id}")
async def websocket_verify(websocket: WebSocket, passenger_id: str):
    """
    WebSocket endpoint for face verification.

    Protocol:
        Client -> Server:
        {"type": "frame", "data": "<base64-encoded JPEG>"}
        {"type": "capture"}
        {"type": "cancel"}

        Server -> Client:
        {"type": "state", "state": "awaiting"}
        {"type": "verdict", "is_valid": bool, "confidence": float,
         "message": "...", "face_detected": bool, "distance": float | null}
        {"type": "session_closed"}
        {"type": "error", "error": "...", "code": "..."}

    Args:
        websocket: The WebSocket connection.
        passenger_id: Passenger whose enrollment is verified.
    """
    await websocket.accept()

    outbox = SocketOutbox(websocket)
    outbox.start()
    session: Optional[VerificationSession] = None
    closed = asyncio.Event()

    try:
        store = get_reference_store()
        reference_set = store.load_reference_set(passenger_id)
        if reference_set is None:
            raise NoReferenceError(NO_REFERENCE_MESSAGE)

        source = LatestFrameSource()
        gate = FaceGate(source, get_embedder(), config=get_config())
        session = gate.begin_verification(reference_set)

        def on_verdict(verdict: VerificationVerdict) -> None:
            outbox.post(VerdictMessage(**verdict.to_dict()))
            store.log_verification(
                passenger_id,
                is_valid=verdict.is_valid,
                face_detected=verdict.face_detected,
                confidence=verdict.confidence,
                distance=verdict.distance,
            )

        def on_closed() -> None:
            outbox.post(SessionClosedMessage())
            closed.set()

        session.on_verdict(on_verdict)
        session.on_closed(on_closed)

        await session.start()
        await outbox.send(SessionStateMessage(state=session.state.value))
        logger.info(f"Verification session started for passenger {passenger_id}")

        while True:
            try:
                raw = await _receive_unless_closed(websocket, closed)
                if raw is None:
                    break
                message = VerificationClientMessage.model_validate(raw)
            except (ValueError, ValidationError) as e:
                logger.warning(f"Invalid verification message: {e}")
                await outbox.send(ErrorMessage(error="Invalid message", code="INVALID_MESSAGE"))
                continue

            if message.type == "frame":
                frame = frame_from_base64(message.data or "")
                if frame is None:
                    await outbox.send(ErrorMessage(error="Invalid image data", code="INVALID_IMAGE"))
                else:
                    source.push(frame)
                continue

            if message.type == "cancel":
                await session.cancel()
                await outbox.send(SessionStateMessage(state=session.state.value))
                logger.info(f"Verification cancelled for passenger {passenger_id}")
                break

            try:
                await session.capture()
            except FaceGateError as e:
                await outbox.send(ErrorMessage(error=str(e), code=e.code))
                continue
            await outbox.send(SessionStateMessage(state=session.state.value))

    except WebSocketDisconnect:
        logger.info(f"Client disconnected during verification: {passenger_id}")

    except FaceGateError as e:
        logger.warning(f"Verification for {passenger_id} could not start: {e}")
        await outbox.send(ErrorMessage(error=str(e), code=e.code))

    except Exception as e:
        logger.error(f"Unexpected error during verification: {e}")
        await outbox.send(ErrorMessage(error="Internal error, please try again.", code="UNEXPECTED_ERROR"))

    finally:
        if session is not None:
            await session.cancel()
        await outbox.close()
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"WebSocket already closed: {e}")
