"""
Prometheus metric definitions  +  /metrics route (multiprocess-ready)
--------------------------------------------------------------------
• 若设置环境变量  PROMETHEUS_MULTIPROC_DIR=<dir>：
    - 使用 multiprocess Collector 聚合所有进程写入的 .db 文件
• 否则回退为单进程默认注册表
"""

import os

from fastapi import APIRouter, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CollectorRegistry,
    multiprocess,
)

from agentflow.config import ENABLE_PROMETHEUS

router = APIRouter()

# ────────── Registry 处理 ───────────────────────────────────
if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
    _REGISTRY: CollectorRegistry | None = CollectorRegistry()
    multiprocess.MultiProcessCollector(_REGISTRY)
else:
    _REGISTRY = None  # 使用默认全局 registry
# ───────────────────────────────────────────────────────────

# ────────── Metric definitions ─────────────────────────────
workflow_started = Counter(
    "workflow_started_total",
    "Total workflow runs started in AgentFlow",
    registry=_REGISTRY,
)

workflow_finished = Counter(
    "workflow_finished_total",
    "Workflow runs that reached a terminal status",
    ["status"],
    registry=_REGISTRY,
)

workflows_running = Gauge(
    "workflows_running",
    "Workflow runs currently being driven by this process",
    registry=_REGISTRY,
)

step_success = Counter(
    "step_success_total",
    "Successful step executions",
    ["handler"],
    registry=_REGISTRY,
)

step_fail = Counter(
    "step_fail_total",
    "Failed step executions (after retries)",
    ["handler"],
    registry=_REGISTRY,
)

step_retry = Counter(
    "step_retry_total",
    "Step attempts that were retried",
    ["handler"],
    registry=_REGISTRY,
)

handler_duration = Histogram(
    "handler_duration_seconds",
    "Handler execution duration (seconds)",
    ["handler"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    registry=_REGISTRY,
)
# ───────────────────────────────────────────────────────────

# ────────── /metrics endpoint ──────────────────────────────
if ENABLE_PROMETHEUS:
    @router.get("/metrics")
    def metrics() -> Response:            # pragma: no cover
        """Prometheus scrape endpoint."""
        return Response(
            generate_latest(_REGISTRY) if _REGISTRY is not None else generate_latest(),
            media_type="text/plain",
        )
