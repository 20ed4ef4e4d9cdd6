"""
Metrics API Routes
==================
Prometheus metrics endpoint for observability.
"""

import logging
from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from metrics import llm_metrics, planning_metrics  # noqa: F401  (registers collectors)

logger = logging.getLogger(__name__)

# Create router - no /api prefix since this is a standard Prometheus endpoint
router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint():
    """
    Prometheus metrics endpoint.

    This endpoint is scraped by Prometheus to collect metrics about:
    - LLM API calls (requests, rate limits, fallbacks, parse failures)
    - Planning requests and clarification dialogs
    - Task breakdowns, reconciliation writes and status transitions
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
