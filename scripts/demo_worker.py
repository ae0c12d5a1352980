#!/usr/bin/env python
# scripts/demo_worker.py
# 模拟一个 worker：触发 work order，认领 run，逐个执行 job 并回报结果。
# 需先运行 scripts/reset_db.py 并启动服务。

import json
import sys

import requests

BASE_URL = "http://localhost:8000"
WORKFLOW_ID = "demo-orders"


def print_response(response, message=""):
    print(f"\n{message}")
    print(f"状态码: {response.status_code}")
    try:
        print(f"响应内容: {json.dumps(response.json(), indent=2, ensure_ascii=False)}")
    except ValueError:
        print(f"响应内容: {response.text}")


def post(path, body=None, message=""):
    response = requests.post(f"{BASE_URL}{path}", json=body)
    print_response(response, message)
    response.raise_for_status()
    return response.json()


def run_demo(fail_load=False):
    created = post("/work_orders", {
        "workflow_id": WORKFLOW_ID,
        "trigger_id": "webhook",
        "dataclip": {"order_id": 42},
        "request": {"method": "POST", "path": "/hooks/orders"},
    }, "创建 work order:")

    claimed = post("/runs/claim", {"worker_id": "demo-worker", "run_id": created["run"]["id"]}, "认领 run:")
    if not claimed["runs"]:
        print("run 仍在排队（并发已满），稍后再试")
        return False
    run = claimed["runs"][0]

    run = post(f"/runs/{run['id']}/start", message="开始 run:")
    clip_id = run["dataclip_id"]

    for job_id, payload in (("fetch", {"orders": [42]}), ("load", {"inserted": 1})):
        step = post(f"/runs/{run['id']}/steps", {"job_id": job_id, "input_dataclip_id": clip_id}, f"开始 {job_id}:")
        post(f"/runs/{run['id']}/logs", {"lines": [
            {"message": f"{job_id} started", "step_id": step["id"], "source": "JOB"},
        ]}, f"{job_id} 日志:")

        if job_id == "load" and fail_load:
            post(f"/steps/{step['id']}/complete", {"exit_reason": "fail", "error_type": "DBError"}, "load 失败:")
            post(f"/runs/{run['id']}/complete", {"exit_reason": "fail", "error_type": "DBError"}, "完成 run:")
            return True

        step = post(f"/steps/{step['id']}/complete", {"exit_reason": "success", "output_dataclip": payload}, f"完成 {job_id}:")
        clip_id = step["output_dataclip_id"]

    post(f"/runs/{run['id']}/complete", {"exit_reason": "success"}, "完成 run:")
    return True


if __name__ == "__main__":
    ok = run_demo(fail_load="--fail" in sys.argv)
    sys.exit(0 if ok else 1)
