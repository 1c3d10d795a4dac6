import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import asyncpg

from journey_engine.config import Settings
from journey_engine.services.deployment_tracker import (
    DeploymentTracker,
    FileDeploymentStore,
    PostgresDeploymentStore,
)
from journey_engine.services.ghl_client import DeliveryConfig, FixedDelayThrottle, GhlClient
from journey_engine.services.link_checker import LinkChecker
from journey_engine.services.validation import TouchpointValidator


class JourneyLocks:
    """Advisory lock per journey id so two batches never race on the same templates."""

    def __init__(self) -> None:
        # Entries vanish once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, journey_id: str) -> asyncio.Lock:
        lock = self._locks.get(journey_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[journey_id] = lock
        return lock

    def is_locked(self, journey_id: str) -> bool:
        lock = self._locks.get(journey_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, journey_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(journey_id)
        async with lock:
            yield


@dataclass
class PublishContext:
    client: GhlClient
    tracker: DeploymentTracker
    validator: TouchpointValidator = field(default_factory=TouchpointValidator)
    link_checker: LinkChecker = field(default_factory=LinkChecker)
    locks: JourneyLocks = field(default_factory=JourneyLocks)


async def build_publish_context(settings: Settings, pool: asyncpg.Pool | None = None) -> PublishContext:
    if pool is not None:
        store = PostgresDeploymentStore(pool)
        await store.ensure_schema()
    else:
        store = FileDeploymentStore(settings.deployments_dir)

    client = GhlClient(
        DeliveryConfig.from_settings(settings),
        throttle=FixedDelayThrottle(settings.ghl_rate_limit_delay),
    )
    return PublishContext(
        client=client,
        tracker=DeploymentTracker(store),
        validator=TouchpointValidator(settings.spam_trigger_words),
        link_checker=LinkChecker(timeout=settings.link_check_timeout),
    )
