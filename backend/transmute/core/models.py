"""
Transmute - Database Models
===========================

SQLAlchemy models for projects, vertical slices, pipeline checkpoints
and the append-only agent event log.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from transmute.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class ProjectStatus(str, enum.Enum):
    """Lifecycle of a migration project."""
    PENDING = "pending"
    PROCESSING = "processing"    # Analysis stages running
    ANALYZED = "analyzed"        # Waiting for configuration
    READY = "ready"              # Slices planned
    BUILDING = "building"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED = "paused"


class SliceStatus(str, enum.Enum):
    """Build state of a vertical slice."""
    PENDING = "pending"
    SELECTED = "selected"
    BUILDING = "building"
    TESTING = "testing"
    SELF_HEALING = "self_healing"
    COMPLETE = "complete"
    FAILED = "failed"


class AgentEventType(str, enum.Enum):
    """Kinds of entries in the agent event log."""
    THOUGHT = "thought"
    TOOL_CALL = "tool_call"
    CODE_WRITE = "code_write"
    TEST_RUN = "test_run"
    TEST_RESULT = "test_result"
    SELF_HEAL = "self_heal"
    CONFIDENCE_UPDATE = "confidence_update"
    OBSERVATION = "observation"
    APP_START = "app_start"
    SCREENSHOT = "screenshot"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Project(Base, TimestampMixin):
    """
    A legacy application being migrated.

    Created once per migration request and never deleted; only its
    status transitions.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    source_url: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )  # Repository of the legacy application

    # Pipeline state
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus),
        default=ProjectStatus.PENDING,
        nullable=False,
        index=True,
    )
    pipeline_step: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )  # left as the last completed or currently running step
    current_slice_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    confidence_score: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    error_context: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )  # {step, message, timestamp, retryable, details}

    # Analysis output and user configuration
    project_metadata: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    preferences: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    configured_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    slices: Mapped[list["VerticalSlice"]] = relationship(
        back_populates="project",
        lazy="selectin",
        order_by="VerticalSlice.priority",
    )

    @property
    def workspace_id(self) -> str:
        """Sandbox workspace shared by all slices of this project."""
        metadata = self.project_metadata or {}
        return str(metadata.get("workspace_id") or f"project-{self.id}")

    def __repr__(self) -> str:
        return f"<Project {self.name} [{self.status.value}]>"


class VerticalSlice(Base, TimestampMixin):
    """
    Independently buildable unit of the target application.

    Created in bulk by planning, mutated only by the build loop for
    that slice.
    """

    __tablename__ = "vertical_slices"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # Lower builds first
    status: Mapped[SliceStatus] = mapped_column(
        Enum(SliceStatus),
        default=SliceStatus.PENDING,
        nullable=False,
        index=True,
    )
    dependencies: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )  # Slice ids (as strings)

    # Contracts
    behavioral_contract: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    code_contract: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )

    # Build state
    confidence_score: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Relationships
    project: Mapped["Project"] = relationship(
        back_populates="slices",
    )

    @property
    def dependency_ids(self) -> set[str]:
        return {str(dep) for dep in (self.dependencies or [])}

    def __repr__(self) -> str:
        return f"<VerticalSlice {self.name} [{self.status.value}]>"


class PipelineCheckpoint(Base):
    """
    One completed pipeline step and its result.

    The row id records completion order. Name and result share a row,
    so a step is listed as completed exactly when its result exists.
    """

    __tablename__ = "pipeline_checkpoints"
    __table_args__ = (
        UniqueConstraint("project_id", "step_name", name="uq_checkpoint_project_step"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )  # stage name, "planning" or "slice:<id>"
    result: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PipelineCheckpoint {self.step_name}>"


class AgentEvent(Base):
    """
    Append-only log entry.

    Ordered by id; replaying the sequence reconstructs what happened.
    Never updated or deleted after insertion.
    """

    __tablename__ = "agent_events"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slice_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )  # None for project-level events
    event_type: Mapped[AgentEventType] = mapped_column(
        Enum(AgentEventType),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    event_metadata: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    confidence_delta: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )
    confidence_after: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )  # Score once the delta was applied
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AgentEvent {self.id} {self.event_type.value}>"
