"""
Task Planner — Metrics Collection
=================================
Prometheus metrics for observability.

Usage:
    from metrics import llm_metrics, planning_metrics

    with llm_metrics.track_request(model, provider) as meta:
        response = await llm.ainvoke(messages)
        meta["result"] = "success"

    planning_metrics.plans_total.labels(result="tasks").inc()
"""

from prometheus_client import Counter, Histogram
import time
from contextlib import contextmanager


# =============================================================================
# LLM METRICS
# =============================================================================

class LLMMetrics:
    """Metrics for LLM API calls"""

    def __init__(self):
        self.requests_total = Counter(
            'planner_llm_requests_total',
            'Total LLM API calls',
            ['model', 'provider', 'result']  # result: success, rate_limit, blocked, error
        )

        self.request_duration = Histogram(
            'planner_llm_request_duration_seconds',
            'LLM API request duration',
            ['model', 'provider'],
            buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0]
        )

        self.rate_limit_events = Counter(
            'planner_llm_rate_limit_events_total',
            'Rate limit signals encountered',
            ['model', 'provider']
        )

        self.fallback_total = Counter(
            'planner_llm_fallback_total',
            'Calls retried against the fallback model',
            ['provider']
        )

        self.parse_failures_total = Counter(
            'planner_llm_parse_failures_total',
            'Structured responses that could not be recovered',
            ['provider']
        )

    @contextmanager
    def track_request(self, model: str, provider: str):
        """Context manager to track an LLM request"""
        start = time.time()
        result = "error"
        metadata = {"result": "success"}

        try:
            yield metadata
            result = metadata.get("result", "success")
        except Exception:
            # Keep a specific label (rate_limit, blocked) set before the raise
            result = metadata["result"] if metadata.get("result") not in (None, "success") else "error"
            raise
        finally:
            duration = time.time() - start
            self.request_duration.labels(model=model, provider=provider).observe(duration)
            self.requests_total.labels(model=model, provider=provider, result=result).inc()


# =============================================================================
# PLANNING METRICS
# =============================================================================

class PlanningMetrics:
    """Metrics for the planning pipeline"""

    def __init__(self):
        self.plans_total = Counter(
            'planner_plans_total',
            'Planning requests by outcome',
            ['planning_type', 'result']  # result: tasks, clarification, error
        )

        self.clarifications_total = Counter(
            'planner_clarifications_total',
            'Clarification questions by stage',
            ['stage']  # stage: asked, answered, expired
        )

        self.decompositions_total = Counter(
            'planner_decompositions_total',
            'High-effort task breakdowns',
            ['result']  # result: success, failure
        )

        self.reconcile_operations_total = Counter(
            'planner_reconcile_operations_total',
            'Task store writes produced by plan reconciliation',
            ['op']  # op: add, update, delete
        )

        self.task_transitions_total = Counter(
            'planner_task_transitions_total',
            'Task status transitions',
            ['to_status']
        )

        self.finalize_duration = Histogram(
            'planner_finalize_duration_seconds',
            'Time to classify, decompose and reconcile a plan',
            buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0]
        )


# =============================================================================
# GLOBAL INSTANCES
# =============================================================================

llm_metrics = LLMMetrics()
planning_metrics = PlanningMetrics()
