from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
import uuid
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import asyncpg
from pydantic import ValidationError

from journey_engine.models.deployments import (
    Deployment,
    DeploymentItem,
    DeploymentStatus,
    DeploymentSummary,
    ItemStatus,
    Touchpoint,
)
from journey_engine.services.errors import (
    DeploymentNotFoundError,
    DeploymentStateError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

TERMINAL_ITEM_STATUSES: frozenset[str] = frozenset({"published", "failed", "skipped"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "in_progress": frozenset({"completed", "partial", "failed", "dry_run"}),
    "completed": frozenset({"rolled_back"}),
    "partial": frozenset({"rolled_back"}),
    "failed": frozenset(),
    "dry_run": frozenset(),
    "rolled_back": frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_deployment_id() -> str:
    return f"deploy-{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:8]}"


def advance_status(deployment: Deployment, status: DeploymentStatus) -> None:
    if status not in _ALLOWED_TRANSITIONS[deployment.status]:
        raise DeploymentStateError(
            f"Deployment {deployment.id} cannot move from {deployment.status} to {status}"
        )
    deployment.status = status


def compute_summary(deployment: Deployment) -> DeploymentSummary:
    statuses = [item.status for item in deployment.items]
    return DeploymentSummary(
        total=len(statuses),
        published=statuses.count("published"),
        failed=statuses.count("failed"),
        skipped=statuses.count("skipped"),
    )


def apply_completion_rule(deployment: Deployment) -> bool:
    """Close out an in-progress deployment once every item is terminal.

    Returns True when the deployment transitioned.
    """
    if deployment.status != "in_progress":
        return False
    if not all(item.status in TERMINAL_ITEM_STATUSES for item in deployment.items):
        return False

    if any(item.status == "failed" for item in deployment.items):
        advance_status(deployment, "partial")
    elif deployment.dry_run or (
        deployment.items and all(item.status == "skipped" for item in deployment.items)
    ):
        advance_status(deployment, "dry_run")
    else:
        advance_status(deployment, "completed")
    deployment.completed_at = _utcnow()
    return True


class DeploymentStore(Protocol):
    async def read(self, deployment_id: str) -> dict | None: ...

    async def write(self, document: dict) -> None: ...

    async def read_all(self, journey_id: str | None = None) -> list[dict]: ...


class FileDeploymentStore:
    """One JSON document per deployment, replaced atomically on every write."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _path(self, deployment_id: str) -> Path:
        if not deployment_id or os.sep in deployment_id or deployment_id.startswith("."):
            raise PersistenceError(f"Invalid deployment id: {deployment_id!r}")
        return self.base_dir / f"{deployment_id}.json"

    def _write_sync(self, document: dict) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(document["id"])
        fd, tmp_name = tempfile.mkstemp(dir=self.base_dir, prefix=f".{target.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _read_sync(self, deployment_id: str) -> dict | None:
        path = self._path(deployment_id)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as handle:
            return json.load(handle)

    def _read_all_sync(self, journey_id: str | None) -> list[dict]:
        if not self.base_dir.exists():
            return []
        documents: list[dict] = []
        for path in sorted(self.base_dir.glob("deploy-*.json")):
            try:
                with path.open(encoding="utf-8") as handle:
                    document = json.load(handle)
            except (OSError, ValueError):
                logger.exception("Skipping unreadable deployment record", extra={"path": str(path)})
                continue
            if journey_id is None or document.get("journey_id") == journey_id:
                documents.append(document)
        return documents

    async def read(self, deployment_id: str) -> dict | None:
        return await asyncio.to_thread(self._read_sync, deployment_id)

    async def write(self, document: dict) -> None:
        await asyncio.to_thread(self._write_sync, document)

    async def read_all(self, journey_id: str | None = None) -> list[dict]:
        return await asyncio.to_thread(self._read_all_sync, journey_id)


class PostgresDeploymentStore:
    """Deployment documents kept as jsonb rows, one row per deployment id."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        await self.pool.execute(
            """
            CREATE TABLE IF NOT EXISTS journey_deployments (
                id TEXT PRIMARY KEY,
                journey_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            CREATE INDEX IF NOT EXISTS journey_deployments_journey_idx
                ON journey_deployments (journey_id, created_at DESC);
            """
        )

    async def read(self, deployment_id: str) -> dict | None:
        row = await self.pool.fetchrow(
            "SELECT document FROM journey_deployments WHERE id = $1",
            deployment_id,
        )
        if row is None:
            return None
        return dict(row["document"])

    async def write(self, document: dict) -> None:
        await self.pool.execute(
            """
            INSERT INTO journey_deployments (id, journey_id, created_at, document)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE
            SET document = EXCLUDED.document,
                updated_at = NOW()
            """,
            document["id"],
            document["journey_id"],
            datetime.fromisoformat(document["created_at"]),
            document,
        )

    async def read_all(self, journey_id: str | None = None) -> list[dict]:
        if journey_id is None:
            rows = await self.pool.fetch(
                "SELECT document FROM journey_deployments ORDER BY created_at DESC, id DESC"
            )
        else:
            rows = await self.pool.fetch(
                """
                SELECT document
                FROM journey_deployments
                WHERE journey_id = $1
                ORDER BY created_at DESC, id DESC
                """,
                journey_id,
            )
        return [dict(row["document"]) for row in rows]


class DeploymentTracker:
    """Durable ledger of deployments.

    Every state transition is written through before the caller continues, and
    writes for the same deployment id are serialized. Store failures surface as
    PersistenceError.
    """

    def __init__(self, store: DeploymentStore) -> None:
        self.store = store
        # Entries vanish once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, deployment_id: str) -> asyncio.Lock:
        lock = self._locks.get(deployment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[deployment_id] = lock
        return lock

    async def _write(self, deployment: Deployment) -> None:
        try:
            await self.store.write(deployment.model_dump(mode="json"))
        except PersistenceError:
            raise
        except Exception as exc:
            logger.exception("Failed to persist deployment", extra={"deployment_id": deployment.id})
            raise PersistenceError(f"Could not persist deployment {deployment.id}: {exc}") from exc

    async def _read(self, deployment_id: str) -> Deployment | None:
        try:
            document = await self.store.read(deployment_id)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.exception("Failed to read deployment", extra={"deployment_id": deployment_id})
            raise PersistenceError(f"Could not read deployment {deployment_id}: {exc}") from exc
        if document is None:
            return None
        try:
            return Deployment.model_validate(document)
        except ValidationError as exc:
            raise PersistenceError(f"Deployment record {deployment_id} is malformed") from exc

    async def create(
        self,
        journey_id: str,
        touchpoints: list[Touchpoint],
        *,
        dry_run: bool = False,
    ) -> Deployment:
        deployment = Deployment(
            id=new_deployment_id(),
            journey_id=journey_id,
            dry_run=dry_run,
            created_at=_utcnow(),
            items=[
                DeploymentItem(id=tp.id, name=tp.name, type=tp.type or "Email")
                for tp in touchpoints
            ],
        )
        async with self._lock_for(deployment.id):
            await self._write(deployment)
        return deployment

    async def save(self, deployment: Deployment) -> None:
        async with self._lock_for(deployment.id):
            await self._write(deployment)

    async def load(self, deployment_id: str) -> Deployment | None:
        return await self._read(deployment_id)

    async def require(self, deployment_id: str) -> Deployment:
        deployment = await self._read(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    async def update_item_status(
        self,
        deployment_id: str,
        item_id: str,
        status: ItemStatus,
        **extra: Any,
    ) -> Deployment:
        async with self._lock_for(deployment_id):
            deployment = await self.require(deployment_id)
            item = deployment.find_item(item_id)
            if item is not None:
                item.status = status
                for key, value in extra.items():
                    setattr(item, key, value)
            else:
                logger.warning(
                    "Status update for unknown item",
                    extra={"deployment_id": deployment_id, "item_id": item_id},
                )
            apply_completion_rule(deployment)
            await self._write(deployment)
            return deployment

    async def finalize(self, deployment_id: str) -> Deployment:
        async with self._lock_for(deployment_id):
            deployment = await self.require(deployment_id)
            deployment.summary = compute_summary(deployment)
            apply_completion_rule(deployment)
            await self._write(deployment)
            return deployment

    async def list(self, journey_id: str | None = None) -> list[Deployment]:
        try:
            documents = await self.store.read_all(journey_id)
        except Exception as exc:
            logger.exception("Failed to list deployments", extra={"journey_id": journey_id})
            raise PersistenceError(f"Could not list deployments: {exc}") from exc

        deployments: list[Deployment] = []
        for document in documents:
            try:
                deployments.append(Deployment.model_validate(document))
            except ValidationError:
                logger.warning(
                    "Skipping malformed deployment record",
                    extra={"deployment_id": document.get("id")},
                )
        deployments.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return deployments

    async def known_external_ids(self, journey_id: str) -> dict[str, str]:
        known: dict[str, str] = {}
        for deployment in await self.list(journey_id):
            for item in deployment.items:
                if item.status == "published" and item.external_id and item.id not in known:
                    known[item.id] = item.external_id
        return known
