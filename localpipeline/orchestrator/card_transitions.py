"""Best-effort updates of the originating tracker card."""

import logging
from typing import Sequence

from localpipeline.providers.base import CardStatus, ProviderCapability, WorkItemProvider

logger = logging.getLogger(__name__)


async def transition_card(
    item_id: str,
    status: CardStatus,
    providers: Sequence[WorkItemProvider]
) -> bool:
    """
    Move a work item to ``status`` on the first provider that accepts it.

    Providers are tried in order; failures are logged, never raised, since
    card movement must not block agent operations.

    Returns:
        True if some provider moved the card
    """
    for provider in providers:
        if not provider.supports(ProviderCapability.MOVE_ITEM):
            continue
        try:
            await provider.move_item(item_id, status)
            logger.info(f"Moved {item_id} to {status.value} via {provider.name}")
            return True
        except Exception as e:
            logger.warning(f"{provider.name} could not move {item_id} to {status.value}: {e}")
    return False


async def post_comment(
    item_id: str,
    text: str,
    providers: Sequence[WorkItemProvider]
) -> bool:
    """
    Comment on a work item via the first provider that accepts it.

    Returns:
        True if some provider posted the comment
    """
    for provider in providers:
        if not provider.supports(ProviderCapability.ADD_COMMENT):
            continue
        try:
            await provider.add_comment(item_id, text)
            logger.info(f"Commented on {item_id} via {provider.name}")
            return True
        except Exception as e:
            logger.warning(f"{provider.name} could not comment on {item_id}: {e}")
    return False
