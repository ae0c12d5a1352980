#!/usr/bin/env python
# scripts/watch_run.py

import asyncio
import json
import sys

import websockets


async def watch_run(run_id):
    """订阅某个 run 的日志与状态变更"""
    url = f"ws://localhost:8000/ws/runs/{run_id}"
    print(f"连接到 run {run_id} 的 WebSocket...")

    try:
        async with websockets.connect(url, ping_interval=None, close_timeout=10) as websocket:
            response = await asyncio.wait_for(websocket.recv(), timeout=5)
            print(f"收到消息: {response}")

            while True:
                try:
                    message = await asyncio.wait_for(websocket.recv(), timeout=30)
                    data = json.loads(message)
                    print(f"收到更新: {json.dumps(data, indent=2, ensure_ascii=False)}")
                except asyncio.TimeoutError:
                    print("等待消息超时，发送 ping...")
                    await websocket.ping()
                except websockets.exceptions.ConnectionClosed:
                    print("连接已关闭")
                    break
    except ConnectionRefusedError:
        print("连接被拒绝，请确保服务器正在运行")
    except asyncio.TimeoutError:
        print("连接或接收消息超时")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("用法: python scripts/watch_run.py <run_id>")
        sys.exit(1)
    asyncio.run(watch_run(sys.argv[1]))
