"""
Prometheus metric definitions  +  /metrics route (multiprocess-ready)
--------------------------------------------------------------------
• 若设置环境变量  PROMETHEUS_MULTIPROC_DIR=<dir>：
    - 使用 multiprocess Collector 聚合所有进程写入的 .db 文件
    - Sweeper 进程只需写文件，不必开端口
• 否则回退为单进程默认注册表
"""

import os

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
    CollectorRegistry,
    REGISTRY,
    multiprocess,
)

from flowrun.config import ENABLE_PROMETHEUS, RUN_TIMEOUT_SECONDS

router = APIRouter()

# ────────── Registry 处理 ───────────────────────────────────
# metrics always register on the default registry; in multiprocess mode the
# scrape registry aggregates the per-process files instead
_REGISTRY: CollectorRegistry = REGISTRY
if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
    _SCRAPE_REGISTRY = CollectorRegistry()
    multiprocess.MultiProcessCollector(_SCRAPE_REGISTRY)
else:
    _SCRAPE_REGISTRY = REGISTRY
# ───────────────────────────────────────────────────────────

# ────────── Metric definitions ─────────────────────────────
runs_queued = Counter(
    "runs_queued_total",
    "Runs that could not be admitted immediately and wait for a slot",
    registry=_REGISTRY,
)

runs_claimed = Counter(
    "runs_claimed_total",
    "Runs claimed by workers",
    registry=_REGISTRY,
)

runs_finished = Counter(
    "runs_finished_total",
    "Runs that reached a final state",
    ["state"],
    registry=_REGISTRY,
)

runs_lost = Counter(
    "runs_lost_total",
    "Runs marked lost by the sweeper",
    ["reason"],
    registry=_REGISTRY,
)

reruns_enqueued = Counter(
    "reruns_enqueued_total",
    "Reruns created from an earlier run",
    ["mode"],
    registry=_REGISTRY,
)

log_lines_appended = Counter(
    "log_lines_appended_total",
    "Log lines appended to run logs",
    registry=_REGISTRY,
)

# buckets must cover the default run timeout
_DEFAULT_BUCKETS = (0.1, 0.5, 1, 5, 10, 30, 60, 120)
_BUCKETS = (*_DEFAULT_BUCKETS, max(RUN_TIMEOUT_SECONDS, 121), RUN_TIMEOUT_SECONDS * 3)

run_duration = Histogram(
    "run_duration_seconds",
    "Run duration from claim to completion (seconds)",
    buckets=sorted(set(_BUCKETS)),
    registry=_REGISTRY,
)
# ───────────────────────────────────────────────────────────

# ────────── /metrics endpoint ──────────────────────────────
if ENABLE_PROMETHEUS:
    @router.get("/metrics")
    def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(
            generate_latest(_SCRAPE_REGISTRY),
            media_type=CONTENT_TYPE_LATEST,
        )
