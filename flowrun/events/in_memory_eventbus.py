from typing import Callable, Deque, List, Dict, Optional, Set
from collections import defaultdict, deque
from asyncio import AbstractEventLoop, Queue, Task, create_task, get_running_loop, CancelledError
import inspect
import logging

from flowrun.events.eventbus_model import EventEnvelope
from flowrun.events.base import EventBus

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class Subscription:
    """An ordered per-observer queue bound to the loop that opened it.

    Publishers may run on another loop (another thread); delivery then goes
    through ``call_soon_threadsafe`` so the order of ``publish`` calls is kept.
    """

    def __init__(self, topic: str, loop: AbstractEventLoop):
        self.topic = topic
        self.loop = loop
        self.queue: Queue[EventEnvelope] = Queue()

    def deliver(self, event: EventEnvelope, current: Optional[AbstractEventLoop]) -> bool:
        if self.loop is current:
            self.queue.put_nowait(event)
            return True
        if self.loop.is_closed():
            return False
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)
        return True

    async def get(self) -> EventEnvelope:
        return await self.queue.get()

    def drain(self) -> List[EventEnvelope]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class InMemoryEventBus(EventBus):
    def __init__(self, history: int = 1000):
        self.subscribers: Dict[str, List[Callable[[EventEnvelope], None]]] = defaultdict(list)
        self.subscriptions: Dict[str, Set[Subscription]] = defaultdict(set)
        self.event_log: Deque[EventEnvelope] = deque(maxlen=history)
        self.event_queue: Optional[Queue] = None
        self.dispatcher: Task | None = None

    # ─────────────────────────── handlers ───────────────────────────

    def subscribe(self, topic: str, handler: Callable[[EventEnvelope], None]):
        """订阅某个 topic；topic 可为具体 topic，也可为 "*"（全部）"""
        self.subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Callable[[EventEnvelope], None]):
        """取消订阅"""
        if handler in self.subscribers.get(topic, []):
            self.subscribers[topic].remove(handler)

    # ───────────────────────── queue observers ──────────────────────

    def open_subscription(self, topic: str) -> Subscription:
        sub = Subscription(topic, get_running_loop())
        self.subscriptions[topic].add(sub)
        logger.debug("[EventBus] subscription opened topic=%s", topic)
        return sub

    def close_subscription(self, sub: Subscription) -> None:
        subs = self.subscriptions.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self.subscriptions[sub.topic]
        logger.debug("[EventBus] subscription closed topic=%s", sub.topic)

    def clear(self):
        """清除所有订阅者和事件日志（常用于测试）"""
        self.subscribers.clear()
        self.subscriptions.clear()
        self.event_log.clear()

    # ─────────────────────────── publish ────────────────────────────

    async def publish(self, event: EventEnvelope):
        self.event_log.append(event)

        try:
            current = get_running_loop()
        except RuntimeError:
            current = None

        for topic in (event.topic, "*"):
            for sub in list(self.subscriptions.get(topic, ())):
                if not sub.deliver(event, current):
                    self.close_subscription(sub)

        handlers = self.subscribers.get(event.topic, []) + self.subscribers.get("*", [])
        if not handlers:
            return
        if self.dispatcher and not self.dispatcher.done():
            await self.event_queue.put(event)
        else:
            await self._run_handlers(event, handlers)

    # ─────────────────────────── dispatcher ─────────────────────────

    async def start(self):
        if self.dispatcher and not self.dispatcher.done():
            logger.warning("[EventBus] Dispatcher already running, start() ignored.")
            return
        logger.info("[EventBus] Dispatcher started.")
        self.event_queue = Queue()
        self.dispatcher = create_task(self._dispatch_loop())

    async def shutdown(self):
        if self.dispatcher:
            logger.info("[EventBus] Waiting for queue to drain before shutdown...")
            await self.event_queue.join()
            logger.info("[EventBus] Cancelling dispatcher task...")
            self.dispatcher.cancel()
            try:
                await self.dispatcher
            except CancelledError:
                logger.info("[EventBus] Dispatcher cancelled successfully.")
            self.dispatcher = None
            self.event_queue = None

    async def _run_handlers(self, event: EventEnvelope, handlers):
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.exception(f"[EventBus] Error in handler for {event.topic}: {e}")

    async def _dispatch_loop(self):
        try:
            while True:
                event = await self.event_queue.get()
                handlers = (
                    self.subscribers.get(event.topic, []) +
                    self.subscribers.get("*", [])
                )
                await self._run_handlers(event, handlers)
                self.event_queue.task_done()
        except CancelledError:
            logger.info("[EventBus] Dispatch loop cancelled.")

    def get_event_log(self) -> List[EventEnvelope]:
        return list(self.event_log)


# 全局事件总线
event_bus = InMemoryEventBus()
