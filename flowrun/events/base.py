from abc import ABC, abstractmethod
from typing import Callable, List

from flowrun.events.eventbus_model import EventEnvelope


class EventBus(ABC):
    """Run-engine notifications: RunAvailable, state changes, log lines.

    Handlers are fire-and-forget; observers that need every event in
    publish order (a run's live log stream) open a subscription instead.
    """

    @abstractmethod
    async def publish(self, event: EventEnvelope) -> None: ...

    async def publish_batch(self, events: List[EventEnvelope]) -> None:
        for event in events:
            await self.publish(event)

    @abstractmethod
    def subscribe(self, topic: str, handler: Callable[[EventEnvelope], None]) -> None: ...

    @abstractmethod
    def open_subscription(self, topic: str): ...

    @abstractmethod
    def close_subscription(self, subscription) -> None: ...

    async def start(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None
