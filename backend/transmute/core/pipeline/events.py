"""
Agent Event Log
===============

Append-only, ordered log of everything the pipeline does. Events carry
a typed payload and an optional confidence delta that is applied in the
same transaction as the insert.

Readers page through the log with an integer cursor (the last event id
they have seen), so a reconnecting client never misses or repeats events.
"""

import asyncio
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.config import Settings, settings as default_settings
from transmute.core.models import AgentEvent, AgentEventType
from transmute.core.pipeline.confidence import ConfidenceAggregator, ScoreTarget
from transmute.core.pipeline.errors import EventAppendError
from transmute.core.schemas import AgentEventCreate, AgentEventRead, EventPayload

logger = structlog.get_logger()

_payload_adapter: TypeAdapter = TypeAdapter(EventPayload)


class EventSink:
    """
    Writes and replays agent events.

    Writes through one instance are serialised; every operation opens
    its own short-lived session so concurrent workers never share one.
    """

    RETRY_BACKOFF_SECONDS = 0.05

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregator: Optional[ConfidenceAggregator] = None,
        config: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.config = config or default_settings
        self.aggregator = aggregator or ConfidenceAggregator(session_factory, self.config)
        self._lock = asyncio.Lock()

    # ======================================================================
    # Writes
    # ======================================================================

    async def append(self, event: AgentEventCreate) -> int:
        """
        Persist an event and apply its confidence delta.

        Args:
            event: Event to append

        Returns:
            Id of the stored event (the existing one for a repeated
            idempotency key)

        Raises:
            EventAppendError: The database kept failing after retries
        """
        attempts = max(1, self.config.EVENT_APPEND_RETRIES + 1)

        async with self._lock:
            for attempt in range(1, attempts + 1):
                try:
                    event_id = await self._insert(event)
                    break
                except OperationalError as exc:
                    logger.warning(
                        "Event append failed",
                        project_id=str(event.project_id),
                        event_type=event.event_type.value,
                        attempt=attempt,
                        error=str(exc),
                    )
                    if attempt == attempts:
                        raise EventAppendError(
                            f"Could not append {event.event_type.value} event after {attempts} attempts",
                            metadata={"project_id": str(event.project_id)},
                        ) from exc
                    await asyncio.sleep(self.RETRY_BACKOFF_SECONDS * attempt)

        if self.config.EVENT_PACING_SECONDS > 0:
            await asyncio.sleep(self.config.EVENT_PACING_SECONDS)
        return event_id

    async def _insert(self, event: AgentEventCreate) -> int:
        async with self._session_factory() as session:
            if event.idempotency_key:
                existing = await self._find_by_key(session, event.idempotency_key)
                if existing is not None:
                    return existing

            confidence_after = None
            if event.confidence_delta is not None:
                confidence_after = await self.aggregator.apply_delta_in_session(
                    session,
                    ScoreTarget(event.project_id, event.slice_id),
                    event.confidence_delta,
                )

            row = AgentEvent(
                project_id=event.project_id,
                slice_id=event.slice_id,
                event_type=event.event_type,
                content=event.content,
                event_metadata=event.payload.model_dump(mode="json") if event.payload else None,
                confidence_delta=event.confidence_delta,
                confidence_after=confidence_after,
                idempotency_key=event.idempotency_key,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Another writer stored the same key first
                await session.rollback()
                if event.idempotency_key:
                    existing = await self._find_by_key(session, event.idempotency_key)
                    if existing is not None:
                        return existing
                raise
            return row.id

    @staticmethod
    async def _find_by_key(session: AsyncSession, key: str) -> Optional[int]:
        return await session.scalar(
            select(AgentEvent.id).where(AgentEvent.idempotency_key == key)
        )

    async def emit(
        self,
        project_id: UUID,
        event_type: AgentEventType,
        content: str,
        payload: Any = None,
        *,
        slice_id: Optional[UUID] = None,
        confidence_delta: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Shorthand for building and appending an event."""
        return await self.append(
            AgentEventCreate(
                project_id=project_id,
                slice_id=slice_id,
                event_type=event_type,
                content=content,
                payload=payload,
                confidence_delta=confidence_delta,
                idempotency_key=idempotency_key,
            )
        )

    # ======================================================================
    # Reads
    # ======================================================================

    async def stream_since(
        self,
        project_id: UUID,
        cursor: int = 0,
        limit: Optional[int] = None,
        slice_id: Optional[UUID] = None,
    ) -> list[AgentEventRead]:
        """
        Events of a project with id greater than `cursor`, in id order.

        Args:
            project_id: Project to read
            cursor: Last event id already seen
            limit: Maximum number of events to return
            slice_id: Only events of this slice

        Returns:
            Events in append order
        """
        stmt = (
            select(AgentEvent)
            .where(AgentEvent.project_id == project_id, AgentEvent.id > cursor)
            .order_by(AgentEvent.id)
        )
        if slice_id is not None:
            stmt = stmt.where(AgentEvent.slice_id == slice_id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()

        return [self._to_read(row) for row in rows]

    def _to_read(self, row: AgentEvent) -> AgentEventRead:
        return AgentEventRead(
            id=row.id,
            project_id=row.project_id,
            slice_id=row.slice_id,
            event_type=row.event_type,
            content=row.content,
            payload=self._parse_payload(row),
            confidence_delta=row.confidence_delta,
            confidence_after=row.confidence_after,
            created_at=row.created_at,
        )

    @staticmethod
    def _parse_payload(row: AgentEvent) -> Any:
        """Validate stored metadata; unknown or malformed payloads read as None."""
        if not row.event_metadata:
            return None
        try:
            payload = _payload_adapter.validate_python(row.event_metadata)
        except ValidationError as exc:
            logger.warning(
                "Ignoring unreadable event payload",
                event_id=row.id,
                event_type=row.event_type.value,
                errors=exc.error_count(),
            )
            return None
        if payload.kind != row.event_type.value:
            logger.warning(
                "Ignoring event payload of mismatched kind",
                event_id=row.id,
                event_type=row.event_type.value,
                kind=payload.kind,
            )
            return None
        return payload
