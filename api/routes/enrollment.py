"""
Enrollment API Routes

This module provides the WebSocket endpoint for real-time face enrollment.

The client streams camera frames and drives the capture session with the
same gestures as the booking UI: press and hold the capture button
(hold_begin / hold_end), delete unwanted samples, then save (finalize).
The finalized reference set is stored under the passenger id.
"""

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.routes.outbox import SocketOutbox
from api.schemas import (
    EnrollmentClientMessage,
    EnrollmentCompleteMessage,
    ErrorMessage,
    SamplesChangedMessage,
    SessionStateMessage,
)
from facegate.camera import LatestFrameSource, frame_from_base64
from facegate.capture import CaptureSession
from facegate.config import get_config
from facegate.errors import FaceGateError
from facegate.gate import FaceGate, get_embedder
from facegate.reference_store import ReferenceStore, get_reference_store

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/ws", tags=["enrollment"])


def _samples_message(session: CaptureSession) -> SamplesChangedMessage:
    return SamplesChangedMessage(
        count=session.sample_count,
        max_samples=session.max_samples,
        sample_ids=[s.sample_id for s in session.samples],
        state=session.state.value,
    )


async def _handle_message(
    message: EnrollmentClientMessage,
    session: CaptureSession,
    source: LatestFrameSource,
    outbox: SocketOutbox,
    store: ReferenceStore,
    passenger_id: str,
    passenger_name: str,
    overwrite: bool,
) -> bool:
    """
    Apply one client message to the capture session.

    Returns:
        True when the session has ended (finalized or cancelled).

    Raises:
        FaceGateError: If the session rejects the operation.
    """
    if message.type == "frame":
        frame = frame_from_base64(message.data or "")
        if frame is None:
            await outbox.send(ErrorMessage(error="Invalid image data", code="INVALID_IMAGE"))
        else:
            source.push(frame)
        return False

    if message.type == "hold_begin":
        await session.hold_begin()
    elif message.type == "hold_end":
        await session.hold_end()
    elif message.type == "remove_sample":
        if not await session.remove_sample(message.sample_id or ""):
            await outbox.send(ErrorMessage(
                error=f"Sample {message.sample_id} not found",
                code="SAMPLE_NOT_FOUND",
            ))
            return False
    elif message.type == "finalize":
        reference_set = await session.finalize()
        store.save_reference_set(
            passenger_id,
            reference_set,
            passenger_name=passenger_name,
            overwrite=overwrite,
        )
        await outbox.send(SessionStateMessage(state=session.state.value))
        await outbox.send(EnrollmentCompleteMessage(
            passenger_id=passenger_id,
            passenger_name=passenger_name,
            n_samples=reference_set.metadata.get("n_samples", len(reference_set)),
            mode=session.strategy.mode.value,
            descriptor_dim=reference_set.descriptor_dim,
        ))
        logger.info(f"Enrollment complete for passenger {passenger_id}")
        return True
    elif message.type == "cancel":
        await session.cancel()
        await outbox.send(SessionStateMessage(state=session.state.value))
        logger.info(f"Enrollment cancelled for passenger {passenger_id}")
        return True

    await outbox.send(SessionStateMessage(state=session.state.value))
    return False


@router.websocket("/enroll/{passenger_id}")
async def websocket_enroll(
    websocket: WebSocket,
    passenger_id: str,
    passenger_name: str = "",
    max_samples: Optional[int] = None,
    mode: Optional[str] = None,
    overwrite: bool = False,
):
    """
    WebSocket endpoint for real-time face enrollment.

    Frames are pushed into the session's frame source; while the client holds
    the capture action, the session samples the latest frame once per
    interval until max_samples is reached.

    Protocol:
        Client -> Server:
        {"type": "frame", "data": "<base64-encoded JPEG>"}
        {"type": "hold_begin"} / {"type": "hold_end"}
        {"type": "remove_sample", "sample_id": "smp_xxx"}
        {"type": "finalize"} / {"type": "cancel"}

        Server -> Client:
        {"type": "state", "state": "acquiring"}
        {"type": "samples_changed", "count": int, "max_samples": int,
         "sample_ids": [...], "state": "..."}
        {"type": "enrollment_complete", "passenger_id": "...", "n_samples": int, ...}
        {"type": "error", "error": "...", "code": "..."}

    Args:
        websocket: The WebSocket connection.
        passenger_id: Booking flow passenger identifier.
        passenger_name: Display name stored with the enrollment.
        max_samples: Override of the configured maximum sample count.
        mode: "embed" or "defer" (override of the configured capture mode).
        overwrite: Replace an existing enrollment for this passenger.
    """
    await websocket.accept()

    outbox = SocketOutbox(websocket)
    outbox.start()
    session: Optional[CaptureSession] = None

    try:
        store = get_reference_store()
        if store.passenger_exists(passenger_id) and not overwrite:
            await outbox.send(ErrorMessage(
                error=f"Passenger '{passenger_id}' is already enrolled.",
                code="PASSENGER_EXISTS",
            ))
            return

        source = LatestFrameSource()
        gate = FaceGate(source, get_embedder(), config=get_config())

        try:
            session = gate.begin_enrollment(max_samples=max_samples, mode=mode)
        except ValueError as e:
            await outbox.send(ErrorMessage(error=str(e), code="INVALID_PARAMETERS"))
            return

        session.on_samples_changed(lambda count, limit: outbox.post(_samples_message(session)))

        await session.start()
        await outbox.send(SessionStateMessage(state=session.state.value))
        logger.info(f"Enrollment session started for passenger {passenger_id}")

        while True:
            try:
                raw = await websocket.receive_json()
                message = EnrollmentClientMessage.model_validate(raw)
            except (ValueError, ValidationError) as e:
                logger.warning(f"Invalid enrollment message: {e}")
                await outbox.send(ErrorMessage(error="Invalid message", code="INVALID_MESSAGE"))
                continue

            try:
                finished = await _handle_message(
                    message, session, source, outbox, store,
                    passenger_id, passenger_name, overwrite,
                )
            except FaceGateError as e:
                await outbox.send(ErrorMessage(error=str(e), code=e.code))
                continue

            if finished:
                break

    except WebSocketDisconnect:
        logger.info(f"Client disconnected during enrollment: {passenger_id}")

    except FaceGateError as e:
        logger.warning(f"Enrollment session for {passenger_id} could not start: {e}")
        await outbox.send(ErrorMessage(error=str(e), code=e.code))

    except Exception as e:
        logger.error(f"Unexpected error during enrollment: {e}")
        await outbox.send(ErrorMessage(error="Internal error, please try again.", code="UNEXPECTED_ERROR"))

    finally:
        if session is not None:
            await session.cancel()
        await outbox.close()
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"WebSocket already closed: {e}")
