"""Prometheus scrape endpoint.

Serves every metric in app.core.metrics in the text exposition format,
for example::

  payment_events_total{event="completed"} 42.0
  lessons_dispatched_total{result="delivered"} 1310.0
  messages_sent_total{message_type="lesson",status="failed"} 3.0

Restrict this path at the edge in production; the counters reveal
payment volume.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
