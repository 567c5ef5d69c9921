"""Repositories for sessions, messages, plans and events.

Every database failure is re-raised as PersistenceUnavailable; callers on
the turn path catch it, warn, and carry on in memory.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tern.errors import PersistenceUnavailable
from tern.events import Event
from tern.plan.models import PlanDocument, PlanStatus, PlanTask, TaskStatus, TaskType
from tern.providers.types import (
    ContentBlock,
    ImageBlock,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from tern.storage.database import Database
from tern.storage.models import (
    EventRecord,
    MessageRecord,
    PlanRecord,
    PlanTaskRecord,
    SessionRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Content block (de)serialization
# ---------------------------------------------------------------------------


def block_to_json(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return {"type": "image", "source_type": block.source_type, "data": block.data, "media_type": block.media_type}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


def block_from_json(data: dict[str, Any]) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(data["text"])
    if kind == "image":
        return ImageBlock(data["source_type"], data["data"], data.get("media_type", ""))
    if kind == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(data["tool_use_id"], data.get("content", ""), bool(data.get("is_error")))
    raise ValueError(f"Unknown content block type: {kind}")


class _Repository:
    def __init__(self, database: Database) -> None:
        self._db = database

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceUnavailable(f"{operation} failed: {e}") from e


# ---------------------------------------------------------------------------
# Sessions + messages
# ---------------------------------------------------------------------------


class SessionRepository(_Repository):
    async def create(
        self,
        session_id: str,
        *,
        title: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        working_directory: str | None = None,
    ) -> SessionRecord:
        async with self._session("create session") as session:
            record = SessionRecord(
                id=session_id,
                title=title,
                provider=provider,
                model=model,
                working_directory=working_directory,
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            logger.info("Created session %s", session_id[:8])
            return record

    async def get(self, session_id: str) -> SessionRecord | None:
        async with self._session("get session") as session:
            return await session.get(SessionRecord, session_id)

    async def list_recent(self, limit: int = 20) -> list[SessionRecord]:
        async with self._session("list sessions") as session:
            result = await session.execute(
                select(SessionRecord).order_by(SessionRecord.updated_at.desc()).limit(limit)
            )
            return list(result.scalars())

    async def append_message(self, session_id: str, message: Message) -> int:
        """Append one message; returns its sequence number."""
        async with self._session("append message") as session:
            current = await session.scalar(
                select(func.max(MessageRecord.sequence)).where(MessageRecord.session_id == session_id)
            )
            sequence = (current or 0) + 1
            session.add(
                MessageRecord(
                    session_id=session_id,
                    sequence=sequence,
                    role=message.role.value,
                    content=[block_to_json(b) for b in message.content],
                )
            )
            await session.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(message_count=SessionRecord.message_count + 1, updated_at=datetime.now(UTC))
            )
            await session.commit()
            return sequence

    async def list_messages(self, session_id: str) -> list[Message]:
        async with self._session("list messages") as session:
            result = await session.execute(
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.sequence)
            )
            return [
                Message(role=Role(r.role), content=[block_from_json(b) for b in r.content])
                for r in result.scalars()
            ]

    async def add_usage(self, session_id: str, usage: Usage, cost: float) -> None:
        async with self._session("add usage") as session:
            await session.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(
                    input_tokens=SessionRecord.input_tokens + usage.input_tokens,
                    output_tokens=SessionRecord.output_tokens + usage.output_tokens,
                    cost=SessionRecord.cost + cost,
                    updated_at=datetime.now(UTC),
                )
            )
            await session.commit()

    async def delete(self, session_id: str) -> None:
        async with self._session("delete session") as session:
            await session.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
            await session.commit()
            logger.info("Deleted session %s", session_id[:8])


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _plan_from_record(record: PlanRecord) -> PlanDocument:
    return PlanDocument(
        id=record.id,
        session_id=record.session_id,
        title=record.title,
        description=record.description,
        context=record.context,
        risks=list(record.risks or []),
        test_strategy=record.test_strategy,
        technical_stack=list(record.technical_stack or []),
        status=PlanStatus(record.status),
        tasks=[
            PlanTask(
                id=t.id,
                order=t.order,
                title=t.title,
                description=t.description,
                task_type=TaskType.parse(t.task_type),
                dependencies=list(t.dependencies or []),
                complexity=t.complexity,
                acceptance_criteria=list(t.acceptance_criteria or []),
                status=TaskStatus(t.status),
                notes=t.notes,
                completed_at=_aware(t.completed_at),
            )
            for t in sorted(record.tasks, key=lambda t: t.order)
        ],
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        approved_at=_aware(record.approved_at),
    )


def _task_record(plan_id: str, task: PlanTask) -> PlanTaskRecord:
    return PlanTaskRecord(
        id=task.id,
        plan_id=plan_id,
        order=task.order,
        title=task.title,
        description=task.description,
        task_type=task.task_type.value,
        dependencies=list(task.dependencies),
        complexity=task.complexity,
        acceptance_criteria=list(task.acceptance_criteria),
        status=task.status.value,
        notes=task.notes,
        completed_at=task.completed_at,
    )


class PlanRepository(_Repository):
    async def save(self, plan: PlanDocument) -> None:
        """Upsert the plan and replace its task rows."""
        async with self._session("save plan") as session:
            record = await session.get(PlanRecord, plan.id)
            if record is None:
                record = PlanRecord(id=plan.id, session_id=plan.session_id, created_at=plan.created_at)
                session.add(record)
            record.title = plan.title
            record.description = plan.description
            record.context = plan.context
            record.risks = list(plan.risks)
            record.test_strategy = plan.test_strategy
            record.technical_stack = list(plan.technical_stack)
            record.status = plan.status.value
            record.updated_at = plan.updated_at
            record.approved_at = plan.approved_at
            await session.execute(delete(PlanTaskRecord).where(PlanTaskRecord.plan_id == plan.id))
            session.add_all(_task_record(plan.id, t) for t in plan.tasks)
            await session.commit()
            logger.debug("Saved plan %s (%s, %d tasks)", plan.id[:8], plan.status.value, len(plan.tasks))

    async def get(self, plan_id: str) -> PlanDocument | None:
        async with self._session("get plan") as session:
            result = await session.execute(
                select(PlanRecord).where(PlanRecord.id == plan_id).options(selectinload(PlanRecord.tasks))
            )
            record = result.scalar_one_or_none()
            return _plan_from_record(record) if record else None

    async def find_by_session(self, session_id: str) -> PlanDocument | None:
        """Most recently updated plan for a session."""
        async with self._session("find plan") as session:
            result = await session.execute(
                select(PlanRecord)
                .where(PlanRecord.session_id == session_id)
                .order_by(PlanRecord.updated_at.desc())
                .limit(1)
                .options(selectinload(PlanRecord.tasks))
            )
            record = result.scalar_one_or_none()
            return _plan_from_record(record) if record else None

    async def delete(self, plan_id: str) -> None:
        async with self._session("delete plan") as session:
            await session.execute(delete(PlanRecord).where(PlanRecord.id == plan_id))
            await session.commit()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventRepository(_Repository):
    async def record(self, event: Event) -> None:
        """EventBus DB persister."""
        async with self._session("record event") as session:
            session.add(
                EventRecord(
                    session_id=event.session_id,
                    event_type=event.type,
                    data=event.data,
                    created_at=event.timestamp,
                )
            )
            await session.commit()

    async def list_for_session(self, session_id: str, event_type: str | None = None) -> list[EventRecord]:
        async with self._session("list events") as session:
            query = select(EventRecord).where(EventRecord.session_id == session_id)
            if event_type:
                query = query.where(EventRecord.event_type == event_type)
            result = await session.execute(query.order_by(EventRecord.id))
            return list(result.scalars())
