"""Prometheus scrape endpoint.

Returns every metric in app/core/metrics.py in the text exposition
format.  The numbers to alert on are the analytics failures that users
never see, e.g.:

  aggregate_writes_total{operation="view",result="failed"} 0.0
  telemetry_tasks_pending 0.0

Restrict access to /metrics at the ingress in production; it reveals
request rates and internal failure patterns.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
