"""
API State Management
====================
Process-wide planner context for the API server, built once at startup.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from config import PlannerConfig
from llm_client import create_completion_provider
from planning.pipeline import ContextProvider, PlanningPipeline
from planning_state import PlanningStateStore
from task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class PlannerContext:
    """Everything a request handler needs, constructed explicitly at startup."""
    config: PlannerConfig
    store: TaskStore
    state_store: PlanningStateStore
    provider: Any
    pipeline: PlanningPipeline


# Global planner context (initialized at startup)
context: Optional[PlannerContext] = None

# Global connection manager (initialized by server)
manager = None


async def build_context(
    config: PlannerConfig,
    notifier=None,
    llm_factory=None,
    context_provider: Optional[ContextProvider] = None,
) -> PlannerContext:
    """Open the stores and wire the pipeline to the notifier."""
    store = TaskStore(config.db_path)
    await store.initialize()
    state_store = PlanningStateStore(config.db_path)
    await state_store.initialize()

    provider = create_completion_provider(config, llm_factory=llm_factory)
    pipeline = PlanningPipeline(
        config,
        store,
        state_store,
        provider=provider,
        notifier=notifier,
        context_provider=context_provider,
    )
    return PlannerContext(
        config=config,
        store=store,
        state_store=state_store,
        provider=provider,
        pipeline=pipeline,
    )


def get_context() -> PlannerContext:
    """Get the planner context. It is initialized at startup."""
    if context is None:
        raise RuntimeError("Planner context not initialized - server startup may have failed")
    return context
