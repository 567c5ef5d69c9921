"""Session-keyed ownership of PlanDocuments.

The store holds the one live plan per session in memory. Writes go to the
database first and to a JSON cache file second; either can fail without
losing the in-memory document. On load the database copy wins, and the
cache is consulted only when the database cannot be reached.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from tern.errors import PersistenceUnavailable, PlanStateError
from tern.plan.models import PlanDocument
from tern.storage.repository import PlanRepository

logger = logging.getLogger(__name__)


class PlanStore:
    def __init__(
        self,
        repository: PlanRepository | None = None,
        cache_dir: Path | None = None,
    ) -> None:
        self._repository = repository
        self._cache_dir = cache_dir
        self._plans: dict[str, PlanDocument] = {}

    def get(self, session_id: str) -> PlanDocument | None:
        return self._plans.get(session_id)

    def create(
        self,
        session_id: str,
        title: str,
        description: str,
        **fields,
    ) -> PlanDocument:
        """Start a new plan for the session.

        An existing plan is only replaced when it is an empty draft or has
        already reached a terminal state.
        """
        existing = self._plans.get(session_id)
        if existing is not None and not (existing.is_empty_draft or existing.status.terminal):
            raise PlanStateError(
                f"Session already has plan '{existing.title}' ({existing.status.value}, "
                f"{len(existing.tasks)} task(s)); finish, reject or cancel it first"
            )
        plan = PlanDocument.new(session_id, title, description, **fields)
        self._plans[session_id] = plan
        logger.info("Created plan %s for session %s", plan.id[:8], session_id[:8])
        return plan

    def put(self, plan: PlanDocument) -> None:
        self._plans[plan.session_id] = plan

    def discard(self, session_id: str) -> None:
        self._plans.pop(session_id, None)

    async def save(self, plan: PlanDocument) -> bool:
        """Persist a plan. Returns False when the database write degraded."""
        self._plans[plan.session_id] = plan
        persisted = True
        if self._repository is not None:
            try:
                await self._repository.save(plan)
            except PersistenceUnavailable as e:
                logger.warning("Plan %s kept in memory only: %s", plan.id[:8], e)
                persisted = False
        if self._cache_dir is not None:
            try:
                await asyncio.to_thread(self._write_cache, plan)
            except OSError as e:
                logger.warning("Could not write plan cache for %s: %s", plan.id[:8], e)
        return persisted

    async def load(self, session_id: str) -> PlanDocument | None:
        """Restore a session's plan, database first."""
        plan: PlanDocument | None = None
        if self._repository is not None:
            try:
                plan = await self._repository.find_by_session(session_id)
            except PersistenceUnavailable as e:
                logger.warning("Database unavailable, trying plan cache: %s", e)
                plan = await asyncio.to_thread(self._read_cache, session_id)
        else:
            plan = await asyncio.to_thread(self._read_cache, session_id)

        if plan is not None:
            self._plans[session_id] = plan
            logger.info("Restored plan %s (%s)", plan.id[:8], plan.status.value)
        return plan

    # ------------------------------------------------------------------
    # JSON cache
    # ------------------------------------------------------------------

    def _cache_path(self, session_id: str) -> Path:
        assert self._cache_dir is not None
        return self._cache_dir / f"{session_id}.json"

    def _write_cache(self, plan: PlanDocument) -> None:
        path = self._cache_path(plan.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".plan-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(plan.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read_cache(self, session_id: str) -> PlanDocument | None:
        if self._cache_dir is None:
            return None
        path = self._cache_path(session_id)
        if not path.exists():
            return None
        try:
            return PlanDocument.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Ignoring unreadable plan cache %s: %s", path, e)
            return None
