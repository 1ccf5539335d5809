"""
Page Preview - Capture Channel
Async message passing between the orchestrator and one page agent.
"""

import asyncio
import logging
import uuid
from typing import Optional

from capture_models import CaptureMessage

logger = logging.getLogger(__name__)


class CaptureChannel:
    """
    A pair of queues scoped to one capture run.

    Every message carries the run's correlation id; messages for another
    run are dropped on receive.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or uuid.uuid4().hex
        self._to_agent: asyncio.Queue = asyncio.Queue()
        self._to_orchestrator: asyncio.Queue = asyncio.Queue()
        self.dropped = 0

    async def send_to_agent(self, message: CaptureMessage):
        await self._to_agent.put(message)

    async def send_to_orchestrator(self, message: CaptureMessage):
        await self._to_orchestrator.put(message)

    async def receive_for_agent(self) -> CaptureMessage:
        return await self._receive(self._to_agent, "agent")

    async def receive_for_orchestrator(self) -> CaptureMessage:
        return await self._receive(self._to_orchestrator, "orchestrator")

    async def _receive(self, queue: asyncio.Queue, side: str) -> CaptureMessage:
        while True:
            message = await queue.get()
            if message.correlation_id == self.correlation_id:
                return message
            self.dropped += 1
            logger.warning(
                f"[CaptureChannel] Dropping {type(message).__name__} for run "
                f"{message.correlation_id} on {side} side (expected {self.correlation_id})"
            )
