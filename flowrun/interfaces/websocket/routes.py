import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from flowrun.events.eventbus_model import run_topic
from flowrun.events.in_memory_eventbus import event_bus
from .connection_manager import manager

router = APIRouter(prefix="/ws", tags=["WebSocket"])
logger = logging.getLogger(__name__)


async def _forward(websocket: WebSocket, run_id: str, subscription) -> None:
    while True:
        event = await subscription.get()
        if not await manager.send(websocket, run_id, event.model_dump(mode="json")):
            return


async def _drain_client(websocket: WebSocket) -> None:
    # 客户端消息仅用于检测断开
    while True:
        data = await websocket.receive_text()
        logger.debug(f"client message ignored: {data}")


@router.websocket("/runs/{run_id}")
async def run_stream(websocket: WebSocket, run_id: str):
    """Live log lines and state changes of one run, in publish order."""
    subscription = event_bus.open_subscription(run_topic(run_id))
    await manager.connect(websocket, run_id)
    tasks = []
    try:
        await websocket.send_json({
            "type": "connection_established",
            "run_id": run_id,
        })
        tasks = [
            asyncio.create_task(_forward(websocket, run_id, subscription)),
            asyncio.create_task(_drain_client(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"WebSocket error for run {run_id}: {exc}")
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        event_bus.close_subscription(subscription)
        manager.disconnect(websocket, run_id)
