import asyncio
from typing import List

from .orchestrator import PipelineController, QueryHandle
from .schemas import SessionSnapshot, StoredNote


class SessionBus:
    """Routes user intents to the controller and fans state snapshots out to subscribers.

    Holds no pipeline state of its own; every read goes through the controller.
    """

    def __init__(self, controller: PipelineController):
        self.controller = controller
        self.subscribers: List[asyncio.Queue] = []
        controller.add_listener(self.publish)

    def publish(self, snapshot: SessionSnapshot) -> None:
        for queue in list(self.subscribers):
            queue.put_nowait(snapshot)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        # New subscribers start from the current state rather than waiting for the next transition.
        queue.put_nowait(self.controller.snapshot())
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    def snapshot(self) -> SessionSnapshot:
        return self.controller.snapshot()

    def submit(self, text: str) -> QueryHandle:
        return self.controller.submit(text)

    def select(self, proposal_id: int) -> None:
        self.controller.select(proposal_id)

    def cancel(self) -> None:
        self.controller.cancel()

    def retry(self) -> None:
        self.controller.retry()

    async def save(self) -> StoredNote:
        return await self.controller.save()

    def discard(self) -> None:
        self.controller.discard()

    def close(self) -> None:
        self.controller.remove_listener(self.publish)
        self.subscribers.clear()
