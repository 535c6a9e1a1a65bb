"""
Outcome Store
=============

Durable record of conversation sessions: ordered messages, collected field
values with their change history, and the final appeal outcome.

Sessions are the leaf of the engine. The analyzer reads them, the evaluator
correlates their outcomes with rule applicability, and the aggregator counts
them per day.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ruleforge.db.models import SessionModel, MessageModel, FieldChangeModel, utcnow
from ruleforge.errors import MalformedImportError, NotFoundError

logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Final result of the appeal a session was about."""
    SUCCESS = "success"
    FAIL = "fail"
    UNKNOWN = "unknown"


DECIDED_OUTCOMES = (Outcome.SUCCESS.value, Outcome.FAIL.value)


@dataclass
class Message:
    """One transcript message."""
    role: str
    content: str
    seq: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "seq": self.seq,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class SessionRecord:
    """Read-side view of a session."""
    session_id: str
    messages: list[Message] = field(default_factory=list)
    collected_fields: dict[str, Any] = field(default_factory=dict)
    outcome: str = Outcome.UNKNOWN.value
    created_at: Optional[datetime] = None
    analyzed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    analysis_attempts: int = 0

    @property
    def user_messages(self) -> list[Message]:
        return [m for m in self.messages if m.role == "user"]

    def transcript(self) -> list[dict]:
        """Messages as plain role/content dicts, in order."""
        return [{"role": m.role, "content": m.content} for m in self.messages]

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
            "collected_fields": dict(self.collected_fields),
            "outcome": self.outcome,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None,
            "analysis_attempts": self.analysis_attempts,
        }

    @classmethod
    def from_model(cls, row: SessionModel) -> "SessionRecord":
        return cls(
            session_id=row.id,
            messages=[
                Message(role=m.role, content=m.content, seq=m.seq, created_at=m.created_at)
                for m in row.messages
            ],
            collected_fields=dict(row.collected_fields or {}),
            outcome=row.outcome,
            created_at=row.created_at,
            analyzed_at=row.analyzed_at,
            claim_token=row.claim_token,
            analysis_attempts=row.analysis_attempts or 0,
        )


def _parse_timestamp(value: str) -> datetime:
    """ISO-8601 text as naive UTC. Accepts a trailing "Z"."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_import_item(index: int, item: Any) -> dict:
    if not isinstance(item, dict):
        raise MalformedImportError(index, "expected an object")
    if item.get("id") in (None, ""):
        raise MalformedImportError(index, "missing id")

    created_at = item.get("created_at")
    if created_at is not None:
        if not isinstance(created_at, str):
            raise MalformedImportError(index, "created_at must be an ISO-8601 string")
        try:
            created_at = _parse_timestamp(created_at)
        except ValueError as e:
            raise MalformedImportError(index, f"bad created_at {item['created_at']!r}") from e

    outcome = item.get("outcome")
    if outcome:
        try:
            outcome = Outcome(outcome)
        except ValueError as e:
            raise MalformedImportError(index, f"unknown outcome {outcome!r}") from e
    else:
        outcome = None

    messages = []
    for message in item.get("messages") or []:
        if not isinstance(message, dict) or "role" not in message:
            raise MalformedImportError(index, "every message needs a role")
        messages.append((str(message["role"]), message.get("content") or ""))

    fields = item.get("fields") or {}
    if not isinstance(fields, dict):
        raise MalformedImportError(index, "fields must be an object")

    return {
        "id": str(item["id"]),
        "user_id": item.get("user_id"),
        "created_at": created_at,
        "messages": messages,
        "fields": fields,
        "outcome": outcome,
    }


class OutcomeStore:
    """Writes and reads sessions, messages, fields and outcomes."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def create_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> SessionRecord:
        """Create a session. Creating an existing id returns the stored one."""
        async with self.session_maker() as db:
            existing = await db.get(SessionModel, session_id)
        if existing is not None:
            return await self.get_session(session_id)

        async with self.session_maker() as db:
            row = SessionModel(
                id=session_id,
                user_id=user_id,
                collected_fields={},
                outcome=Outcome.UNKNOWN.value,
                created_at=created_at or utcnow(),
            )
            db.add(row)
            await db.commit()
            return SessionRecord(session_id=session_id, created_at=row.created_at)

    async def append_message(self, session_id: str, role: str, content: str) -> Message:
        """Append a message at the end of the session transcript."""
        async with self.session_maker() as db:
            async with db.begin():
                if await db.get(SessionModel, session_id) is None:
                    raise NotFoundError("Session", session_id)
                next_seq = await db.scalar(
                    select(func.coalesce(func.max(MessageModel.seq), 0)).where(
                        MessageModel.session_id == session_id
                    )
                )
                message = MessageModel(session_id=session_id, seq=next_seq + 1, role=role, content=content)
                db.add(message)
            return Message(role=role, content=content, seq=message.seq, created_at=message.created_at)

    async def set_field(self, session_id: str, name: str, value: Any) -> bool:
        """
        Set a collected field value, recording the change.

        Returns False when the value did not change.
        """
        async with self.session_maker() as db:
            row = await db.get(SessionModel, session_id)
            if row is None:
                raise NotFoundError("Session", session_id)

            fields = dict(row.collected_fields or {})
            old_value = fields.get(name)
            if old_value == value:
                return False

            fields[name] = value
            row.collected_fields = fields
            db.add(FieldChangeModel(
                session_id=session_id,
                field_name=name,
                old_value=None if old_value is None else str(old_value),
                new_value=None if value is None else str(value),
            ))
            await db.commit()
            return True

    async def field_history(self, session_id: str, name: Optional[str] = None) -> list[dict]:
        """Return field changes for a session, oldest first."""
        async with self.session_maker() as db:
            query = select(FieldChangeModel).where(FieldChangeModel.session_id == session_id)
            if name:
                query = query.where(FieldChangeModel.field_name == name)
            rows = (await db.execute(query.order_by(FieldChangeModel.id))).scalars().all()
            return [
                {
                    "field": r.field_name,
                    "old_value": r.old_value,
                    "new_value": r.new_value,
                    "changed_at": r.changed_at.isoformat() if r.changed_at else None,
                }
                for r in rows
            ]

    async def record_outcome(self, session_id: str, outcome: Outcome) -> None:
        """Record the final appeal outcome of a session."""
        outcome = Outcome(outcome)
        async with self.session_maker() as db:
            result = await db.execute(
                update(SessionModel).execution_options(synchronize_session=False)
                .where(SessionModel.id == session_id)
                .values(outcome=outcome.value, outcome_recorded_at=utcnow())
            )
            if result.rowcount != 1:
                await db.rollback()
                raise NotFoundError("Session", session_id)
            await db.commit()
        logger.debug("Session %s outcome recorded: %s", session_id, outcome.value)

    async def get_session(self, session_id: str) -> SessionRecord:
        async with self.session_maker() as db:
            row = await db.scalar(
                select(SessionModel)
                .options(selectinload(SessionModel.messages))
                .where(SessionModel.id == session_id)
            )
            if row is None:
                raise NotFoundError("Session", session_id)
            return SessionRecord.from_model(row)

    async def import_sessions(self, payload: list[dict]) -> dict:
        """
        Bulk-ingest sessions from plain dicts.

        Each item: {"id", "user_id"?, "created_at"?, "messages": [{"role", "content"}],
        "fields": {name: value}, "outcome"?}. Existing sessions only receive
        field and outcome updates; their messages are left alone.

        The whole payload is checked before anything is written, so a malformed
        item raises MalformedImportError and nothing is imported.
        """
        items = [_parse_import_item(index, item) for index, item in enumerate(payload)]

        created = updated = 0
        for item in items:
            session_id = item["id"]
            async with self.session_maker() as db:
                exists = await db.get(SessionModel, session_id) is not None

            if exists:
                updated += 1
            else:
                await self.create_session(session_id, user_id=item["user_id"], created_at=item["created_at"])
                for role, content in item["messages"]:
                    await self.append_message(session_id, role, content)
                created += 1

            for name, value in item["fields"].items():
                await self.set_field(session_id, name, value)
            if item["outcome"] is not None:
                await self.record_outcome(session_id, item["outcome"])

        logger.info("Imported sessions: %d created, %d updated", created, updated)
        return {"created": created, "updated": updated}

    async def get_stats(self) -> dict:
        """Session counts by outcome and analysis state."""
        async with self.session_maker() as db:
            by_outcome = dict((await db.execute(
                select(SessionModel.outcome, func.count()).group_by(SessionModel.outcome)
            )).all())
            total = sum(by_outcome.values())
            analyzed = await db.scalar(
                select(func.count()).select_from(SessionModel).where(SessionModel.analyzed_at.is_not(None))
            )
            unanalyzable = await db.scalar(
                select(func.count()).select_from(SessionModel).where(SessionModel.unanalyzable_at.is_not(None))
            )
        return {
            "total": total,
            "by_outcome": {o.value: by_outcome.get(o.value, 0) for o in Outcome},
            "analyzed": analyzed or 0,
            "unanalyzable": unanalyzable or 0,
            "pending_analysis": total - (analyzed or 0) - (unanalyzable or 0),
        }
