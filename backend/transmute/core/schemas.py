"""
Transmute - Pydantic Schemas
============================

Request and response schemas for API validation, typed agent event
payloads and the data transfer objects exchanged with collaborators.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from transmute.core.models import AgentEventType, ProjectStatus, SliceStatus


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class VerbatimSchema(BaseModel):
    """Base for payloads and file contents, kept exactly as given."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Event Payloads
# ==========================================================================

class ThoughtPayload(VerbatimSchema):
    """Reasoning or pipeline narration."""

    kind: Literal["thought"] = "thought"
    category: Optional[str] = None
    stage: Optional[str] = None
    pipeline_event: Optional[str] = None  # e.g. "checkpoint", "stage_failed"
    step: Optional[str] = None
    stats: dict[str, Any] = Field(default_factory=dict)


class ToolCallPayload(VerbatimSchema):
    """A command issued against the sandbox."""

    kind: Literal["tool_call"] = "tool_call"
    tool: str
    command: Optional[str] = None
    output_tail: Optional[str] = None


class CodeWritePayload(VerbatimSchema):
    """A file written to the workspace."""

    kind: Literal["code_write"] = "code_write"
    file: str
    content: str = ""
    lines_added: int = 0
    lines_removed: int = 0
    heal_fix: bool = False
    test_file: bool = False


class TestRunPayload(VerbatimSchema):
    """A test suite was started."""

    kind: Literal["test_run"] = "test_run"
    suite: Literal["unit", "e2e"] = "unit"
    command: Optional[str] = None
    attempt: int = 0  # 0 for the initial run, n for heal cycle n


class TestResultPayload(VerbatimSchema):
    """Outcome of a test suite run."""

    kind: Literal["test_result"] = "test_result"
    suite: Literal["unit", "e2e"] = "unit"
    passed: bool
    tests_passed: int = 0
    tests_failed: int = 0
    tests_total: int = 0
    attempt: int = 0


class SelfHealPayload(VerbatimSchema):
    """One diagnose-and-fix attempt."""

    kind: Literal["self_heal"] = "self_heal"
    attempt: int
    max_attempts: int
    diagnosis: str
    fix_description: Optional[str] = None
    fix_files: list[str] = Field(default_factory=list)


class ConfidenceUpdatePayload(VerbatimSchema):
    """Final confidence adjustment for a slice."""

    kind: Literal["confidence_update"] = "confidence_update"
    final_confidence: float
    lines_of_code: int = 0
    tests_passed: int = 0
    tests_total: int = 0
    self_heals: int = 0
    time_elapsed: float = 0.0


class ObservationPayload(VerbatimSchema):
    """Something noticed about the build or running app."""

    kind: Literal["observation"] = "observation"
    category: Optional[str] = None
    success: Optional[bool] = None
    output_tail: Optional[str] = None


class AppStartPayload(VerbatimSchema):
    """The generated application is serving requests."""

    kind: Literal["app_start"] = "app_start"
    url: str
    port: int


class ScreenshotPayload(VerbatimSchema):
    """A captured rendering of the running application."""

    kind: Literal["screenshot"] = "screenshot"
    url: str
    path: Optional[str] = None
    viewport: str = "1280x720"


EventPayload = Annotated[
    Union[
        ThoughtPayload,
        ToolCallPayload,
        CodeWritePayload,
        TestRunPayload,
        TestResultPayload,
        SelfHealPayload,
        ConfidenceUpdatePayload,
        ObservationPayload,
        AppStartPayload,
        ScreenshotPayload,
    ],
    Field(discriminator="kind"),
]


# ==========================================================================
# Agent Events
# ==========================================================================

class AgentEventCreate(BaseSchema):
    """An event to append to the log."""

    project_id: UUID
    slice_id: Optional[UUID] = None
    event_type: AgentEventType
    content: str = ""
    payload: Optional[EventPayload] = None
    confidence_delta: Optional[float] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def check_payload_kind(self) -> "AgentEventCreate":
        """Payload kind must match the event type."""
        if self.payload is not None and self.payload.kind != self.event_type.value:
            raise ValueError(
                f"payload kind '{self.payload.kind}' does not match "
                f"event type '{self.event_type.value}'"
            )
        return self


class AgentEventRead(BaseSchema):
    """A persisted event, as returned by the stream."""

    id: int
    project_id: UUID
    slice_id: Optional[UUID] = None
    event_type: AgentEventType
    content: str
    payload: Optional[EventPayload] = None
    confidence_delta: Optional[float] = None
    confidence_after: Optional[float] = None
    created_at: datetime


class EventListResponse(BaseSchema):
    """Page of events with the cursor to resume from."""

    items: list[AgentEventRead]
    next_cursor: int


# ==========================================================================
# Pipeline State
# ==========================================================================

class ErrorContext(BaseSchema):
    """Why the pipeline stopped, stored on the project."""

    step: str
    message: str
    timestamp: datetime
    retryable: bool = True
    details: dict[str, Any] = Field(default_factory=dict)


class Checkpoint(BaseSchema):
    """Completed steps of a project, in completion order."""

    completed_steps: list[str] = Field(default_factory=list)
    stage_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def is_complete(self, step: str) -> bool:
        return step in self.stage_results

    @property
    def is_empty(self) -> bool:
        return not self.completed_steps


class ProcessResult(BaseSchema):
    """Result of one orchestrator invocation."""

    success: bool
    message: str
    status: Optional[ProjectStatus] = None


# ==========================================================================
# Collaborator DTOs
# ==========================================================================

class GeneratedFile(VerbatimSchema):
    """A file produced by code generation or a fix."""

    path: str
    content: str

    @property
    def line_count(self) -> int:
        return len(self.content.split("\n"))


class CodeGenResult(VerbatimSchema):
    """Source files for a slice plus the generator's reasoning."""

    files: list[GeneratedFile] = Field(default_factory=list)
    reasoning: list[str] = Field(default_factory=list)


class TestGenResult(VerbatimSchema):
    """Test files for a slice."""

    files: list[GeneratedFile] = Field(default_factory=list)
    test_count: Optional[int] = None


class Diagnosis(VerbatimSchema):
    """Root cause of a failure and the files that fix it."""

    diagnosis: str
    fix_description: str = ""
    files: list[GeneratedFile] = Field(default_factory=list)


class CommandResult(VerbatimSchema):
    """Output of a sandbox command."""

    exit_code: int = 0
    output: str = ""


class SliceContract(VerbatimSchema):
    """What a slice must do, handed to code generation."""

    name: str
    description: Optional[str] = None
    behavioral_contract: dict[str, Any] = Field(default_factory=dict)
    code_contract: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_slice(cls, vertical_slice: Any) -> "SliceContract":
        return cls(
            name=vertical_slice.name,
            description=vertical_slice.description,
            behavioral_contract=vertical_slice.behavioral_contract or {},
            code_contract=vertical_slice.code_contract or {},
        )


class SlicePlan(BaseSchema):
    """A slice proposed by planning. Dependencies are slice names."""

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)
    behavioral_contract: dict[str, Any] = Field(default_factory=dict)
    code_contract: dict[str, Any] = Field(default_factory=dict)


# ==========================================================================
# Project Schemas
# ==========================================================================

class ProjectCreate(BaseSchema):
    """Schema for starting a migration project."""

    name: str = Field(min_length=1, max_length=255)
    source_url: Optional[str] = Field(None, max_length=1000)
    project_metadata: dict[str, Any] = Field(default_factory=dict)


class ProjectConfigure(BaseSchema):
    """User preferences that release the analyzed pause."""

    preferences: dict[str, Any] = Field(default_factory=dict)


class ProjectResponse(TimestampSchema):
    """Schema for project in responses."""

    id: UUID
    name: str
    source_url: Optional[str] = None
    status: ProjectStatus
    pipeline_step: Optional[str] = None
    current_slice_id: Optional[UUID] = None
    confidence_score: float
    error_context: Optional[dict[str, Any]] = None
    project_metadata: Optional[dict[str, Any]] = None
    preferences: Optional[dict[str, Any]] = None
    configured_at: Optional[datetime] = None


class SliceResponse(TimestampSchema):
    """Schema for vertical slice in responses."""

    id: UUID
    project_id: UUID
    name: str
    description: Optional[str] = None
    priority: int
    status: SliceStatus
    dependencies: list[str] = Field(default_factory=list)
    behavioral_contract: Optional[dict[str, Any]] = None
    code_contract: Optional[dict[str, Any]] = None
    confidence_score: float
    retry_count: int


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: Literal["healthy", "degraded", "unhealthy"]
    version: str
    environment: str
    database: str
