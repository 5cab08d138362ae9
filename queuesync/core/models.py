"""
QueueSync - Data Models

Row shapes for the local store and the replica, plus the job option and
result envelopes. Results serialise with camelCase keys for the scheduler.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS
# =============================================================================

class QueueType(str, Enum):
    UNSIGNED_USERS = "unsigned_users"
    OUTSTANDING_REQUESTS = "outstanding_requests"


class ConversionType(str, Enum):
    SIGNATURE_OBTAINED = "signature_obtained"
    REQUIREMENTS_COMPLETED = "requirements_completed"


class ProcessingStrategy(str, Enum):
    COMPLETE_PROCESSING = "complete_processing"
    PRIORITY_PROCESSING = "priority_processing"


# Requirement types that never block onboarding completion
EXCLUDED_REQUIREMENT_TYPES = (
    "signature",
    "vehicle_registration",
    "cfa",
    "solicitor_letter_of_authority",
    "letter_of_authority",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# LOCAL STORE ROWS
# =============================================================================

class UserCallScore(BaseModel):
    """One row of user_call_scores."""

    user_id: int
    current_score: int = 0
    current_queue_type: Optional[QueueType] = None
    is_active: bool = True
    total_attempts: int = 0
    last_call_at: Optional[datetime] = None
    last_queue_check: Optional[datetime] = None


class Conversion(BaseModel):
    """
    One row of conversions.

    The live call-outcome handler writes this table too, with its own
    conversion types (completed, opted_out, no_longer_eligible), a
    previous queue of 'unknown' and NULL contributing agents. Both type columns
    are therefore read as plain strings.
    """

    # Ids may come back as uuid strings or bigints
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = None
    user_id: int
    previous_queue_type: Optional[str] = None
    conversion_type: str
    conversion_reason: str
    final_score: int = 0
    total_call_attempts: int = 0
    last_call_at: Optional[datetime] = None
    signature_obtained: bool = False
    converted_at: datetime
    primary_agent_id: Optional[int] = None
    contributing_agents: list[int] = Field(default_factory=list)

    @field_validator("previous_queue_type", "conversion_type", mode="before")
    @classmethod
    def enum_to_value(cls, v):
        return v.value if isinstance(v, Enum) else v

    @field_validator("contributing_agents", mode="before")
    @classmethod
    def null_agents_to_empty(cls, v):
        return [] if v is None else v


class CallSession(BaseModel):
    agent_id: int
    user_id: int
    started_at: datetime
    talk_time_seconds: int = 0
    status: str = "completed"


# =============================================================================
# REPLICA ROWS
# =============================================================================

class SourceUser(BaseModel):
    """Recently created user as read from the replica."""

    id: int
    current_signature_file_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def has_signature(self) -> bool:
        return self.current_signature_file_id is not None


class PendingRequirement(BaseModel):
    """Pending requirement joined through its claim to the owning user."""

    requirement_id: str
    user_id: int
    type: str
    created_at: Optional[datetime] = None
    current_signature_file_id: Optional[int] = None
    is_enabled: bool = True


class UserRequirementStatus(BaseModel):
    """Aggregate of a user's pending actionable requirements across all claims."""

    user_id: int
    pending_count: int
    has_signature: bool


# =============================================================================
# JOB OPTIONS & RESULTS
# =============================================================================

class JobOptions(BaseModel):
    """Options every job accepts. Unset values fall back to the job's defaults."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    hours_back: Optional[float] = Field(default=None, gt=0)
    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)
    dry_run: bool = False


class JobResult(BaseModel):
    """Common result envelope shared by every job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: datetime = Field(default_factory=utc_now)
    duration: int = 0  # milliseconds
    success: bool = True
    errors: list[str] = Field(default_factory=list)
    summary: str = ""
    completed: bool = True
    processing_strategy: ProcessingStrategy = ProcessingStrategy.COMPLETE_PROCESSING
    dry_run: bool = False

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class NewUsersResult(JobResult):
    users_checked: int = 0
    new_users_found: int = 0
    new_users_created: int = 0
    skipped_existing: int = 0
    unsigned: int = 0
    signed: int = 0


class NewRequirementsResult(JobResult):
    requirements_checked: int = 0
    new_requirements_found: int = 0
    users_updated: int = 0
    skipped_unsigned: int = 0
    requirement_type_breakdown: dict[str, int] = Field(default_factory=dict)


class DetectedConversion(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: int
    previous_queue_type: QueueType
    conversion_type: ConversionType
    final_score: int
    logged: bool


class CleanupResult(JobResult):
    users_checked: int = 0
    conversions_found: int = 0
    users_updated: int = 0
    conversions_logged: int = 0
    duplicates_skipped: int = 0
    race_skipped: int = 0
    batches_processed: int = 0
    conversions: list[DetectedConversion] = Field(default_factory=list)


class SignatureCleanupResult(CleanupResult):
    total_unsigned_users: int = 0


class OutstandingCleanupResult(CleanupResult):
    total_outstanding_users: int = 0


class Attribution(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    conversion_id: str
    user_id: int
    primary_agent_id: int
    contributing_agents: list[int] = Field(default_factory=list)
    total_calls_analyzed: int
    most_recent_call_at: datetime


class AttributionResult(JobResult):
    total_unattributed_conversions: int = 0
    conversions_checked: int = 0
    conversions_attributed: int = 0
    conversions_skipped_no_call_history: int = 0
    race_skipped: int = 0
    batches_processed: int = 0
    attributions: list[Attribution] = Field(default_factory=list)
