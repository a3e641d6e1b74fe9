"""
WebSocket outbox shared by the session endpoints.

Session listeners are plain callbacks that fire from inside capture tasks, so
they cannot await websocket.send_json() themselves. They post messages to an
outbox instead; a single sender task drains it so messages keep their order
and never interleave on the socket.
"""

import asyncio
import logging
from typing import Optional

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SocketOutbox:
    """Ordered, non-blocking message queue in front of a WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._drain())

    def post(self, message: BaseModel) -> None:
        """Queue a message; safe to call from synchronous callbacks."""
        self._queue.put_nowait(message.model_dump())

    async def send(self, message: BaseModel) -> None:
        """Queue a message and wait until everything before it is sent."""
        self.post(message)
        await self._queue.join()

    async def close(self) -> None:
        """Flush pending messages and stop the sender task."""
        if self._task is None:
            return
        if not self._task.done():
            await self._queue.join()
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self._websocket.send_json(payload)
            except Exception as e:
                logger.warning(f"Failed to send {payload.get('type')} message: {e}")
            finally:
                self._queue.task_done()
