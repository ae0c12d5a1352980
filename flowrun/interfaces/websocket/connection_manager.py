import json
import logging
from typing import Dict, List, Any
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """管理 WebSocket 连接，按 run_id 分组"""

    def __init__(self):
        self.run_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, run_id: str):
        """建立新的 WebSocket 连接"""
        await websocket.accept()
        self.run_connections.setdefault(run_id, []).append(websocket)
        logger.info(f"WebSocket connected for run {run_id}")

    def disconnect(self, websocket: WebSocket, run_id: str):
        """断开 WebSocket 连接"""
        connections = self.run_connections.get(run_id)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        # 如果组为空，删除该组
        if not connections:
            del self.run_connections[run_id]
        logger.info(f"WebSocket disconnected for run {run_id}")

    def connection_count(self, run_id: str) -> int:
        return len(self.run_connections.get(run_id, []))

    async def send(self, websocket: WebSocket, run_id: str, message: Any) -> bool:
        """Send to one observer; a failed send drops the connection."""
        if not isinstance(message, str):
            message = json.dumps(message, default=str)
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.error(f"Sending to observer of run {run_id} failed: {e}")
            self.disconnect(websocket, run_id)
            return False


# 创建全局连接管理器实例
manager = ConnectionManager()
