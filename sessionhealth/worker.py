"""
Background refresher — satisfy pending refresh intents.

A foreground gather that finds a shared source stale but cannot claim
it leaves an intent behind. This loop picks those intents up, fetches
the source, and writes the result into the global data cache.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from .broker.orchestrator import Broker
from .core.models import GatherContext

logger = logging.getLogger(__name__)


def process_intents(
    broker: Broker,
    *,
    max_intents: int = 50,
    project_path: Optional[str] = None,
) -> int:
    """
    Refresh shared sources that have a pending intent.

    Returns number of sources refreshed.
    """
    intents = broker.intents
    cache = broker.data_cache
    if intents is None or cache is None:
        return 0

    worker_id = f"refresher-{os.getpid()}"
    processed = 0

    for category in intents.get_pending_intents()[:max_intents]:
        source = broker.registry.get(category)
        if source is None or not source.shared:
            logger.debug(f"No shared source for intent {category!r}, leaving it")
            continue

        if not intents.try_acquire(category).acquired:
            continue

        now = broker.now()
        ctx = GatherContext(
            session_id=worker_id,
            deadline=now + source.timeout_ms,
            project_path=project_path,
        )
        try:
            data = source.fetch(ctx)
            if data is None:
                raise ValueError("source returned no data")
            cache.put_source(category, data)
            broker.freshness.record_fetch(source.freshness_category, True)
            intents.release(category, success=True)
            processed += 1

        except Exception as e:
            logger.error(f"Refresh of {category} failed: {e}")
            broker.freshness.record_fetch(source.freshness_category, False)
            intents.release(category, success=False)

    return processed
