"""Routing webhook work items to a free agent or the work queue."""

import logging
from typing import Optional

from pydantic import BaseModel

from localpipeline.app.models.work_item import WorkItem
from localpipeline.orchestrator.orchestration_loop import Orchestrator

logger = logging.getLogger(__name__)


class WebhookDispatchResult(BaseModel):
    """Outcome of ingesting one work item."""
    dispatched: bool
    agent: Optional[str] = None
    queued: bool = False


def webhook_dispatch(item: WorkItem, orchestrator: Orchestrator) -> WebhookDispatchResult:
    """
    Dispatch ``item`` to the next free agent, or enqueue it if all are busy.

    Must be called from the orchestrator's event loop.
    """
    if orchestrator.agent_for_item(item.id) is not None:
        logger.info(f"Work item {item.id} is already being worked on, ignoring")
        return WebhookDispatchResult(dispatched=False)
    if any(queued.id == item.id for queued in orchestrator.queue.get_all()):
        logger.info(f"Work item {item.id} is already queued, ignoring")
        return WebhookDispatchResult(dispatched=False, queued=True)

    agent_name = orchestrator.dispatch_item(item)
    if agent_name is None:
        orchestrator.queue.enqueue(item)
        return WebhookDispatchResult(dispatched=False, queued=True)

    logger.info(f"Webhook item {item.id} dispatched to {agent_name}")
    return WebhookDispatchResult(dispatched=True, agent=agent_name)
