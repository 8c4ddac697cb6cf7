"""Prometheus metrics router."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST

from ..services.metrics import metrics

router = APIRouter()


@router.get("/metrics")
async def get_metrics():
    """Metrics in Prometheus text format."""
    return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)
