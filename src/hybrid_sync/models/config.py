"""
Configuration models for sync operations.
"""

from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator

from .sync import Direction


class SyncMode(str, Enum):
    """Which directions a cycle runs."""
    A_LED = "a_led"
    B_LED = "b_led"
    HYBRID = "hybrid"

    @property
    def directions(self) -> List[Direction]:
        if self is SyncMode.A_LED:
            return [Direction.A_TO_B]
        if self is SyncMode.B_LED:
            return [Direction.B_TO_A]
        # Fixed order: B->A must see the cache as left by A->B
        return [Direction.A_TO_B, Direction.B_TO_A]


class ConflictPolicyName(str, Enum):
    """Configured conflict resolution strategy."""
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWEST_WINS = "newest_wins"


class TransformKind(str, Enum):
    """Closed set of field transforms."""
    IDENTITY = "identity"
    RENAME = "rename"
    DATE_FORMAT = "date_format"
    CONSTANT = "constant"
    CONCAT = "concat"


class FieldMapping(BaseModel):
    """Maps one target field from the source record."""
    target_field: str = Field(..., description="Dotted path of the field in the target record")
    source_field: Optional[str] = Field(None, description="Dotted path in the source record")
    transform: TransformKind = Field(TransformKind.RENAME, description="Transform to apply")
    required: bool = Field(True, description="Whether a missing source value fails the record")

    # date_format
    input_format: Optional[str] = Field(None, description="strptime format, ISO-8601 when empty")
    output_format: Optional[str] = Field(None, description="strftime format, ISO-8601 when empty")

    # constant
    value: Any = Field(None, description="Value written by a constant transform")

    # concat
    source_fields: List[str] = Field(default_factory=list, description="Fields joined by a concat transform")
    separator: str = Field(" ", description="Separator used by a concat transform")

    @property
    def source_path(self) -> str:
        return self.source_field or self.target_field


class MappingTable(BaseModel):
    """All field mappings for one entity type in one direction."""
    entity_type: str
    direction: Direction
    fields: List[FieldMapping]


class DirectionSettings(BaseModel):
    """Per-direction sync rules."""
    enabled: bool = True
    batch_size: int = Field(50, ge=1)
    interval_seconds: float = Field(300.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    concurrency: int = Field(4, ge=1)


class RetrySettings(BaseModel):
    """Exponential backoff settings for failed jobs."""
    base_delay_seconds: float = Field(5.0, ge=0)
    max_delay_seconds: float = Field(300.0, ge=0)
    jitter_ratio: float = Field(0.2, ge=0)


class QueueSettings(BaseModel):
    """Sync queue delivery settings."""
    visibility_timeout_seconds: float = Field(120.0, gt=0)
    poll_interval_seconds: float = Field(0.5, gt=0)


class SyncSettings(BaseModel):
    """Complete engine configuration."""
    mode: SyncMode = SyncMode.HYBRID
    conflict_policy: ConflictPolicyName = ConflictPolicyName.NEWEST_WINS

    a_to_b: DirectionSettings = Field(default_factory=DirectionSettings)
    b_to_a: DirectionSettings = Field(default_factory=DirectionSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)

    entity_types: List[str] = Field(default_factory=lambda: ["customer", "appointment"])

    min_trigger_gap_seconds: Optional[float] = Field(None, description="Minimum gap for on-demand cycles")
    trigger_gap_divisor: int = Field(4, ge=1, description="interval / N when no explicit gap is set")
    watermark_overlap_seconds: float = Field(60.0, ge=0)
    initial_lookback_hours: float = Field(24.0, ge=0)
    shutdown_grace_seconds: float = Field(20.0, ge=0)

    @field_validator("entity_types")
    @classmethod
    def validate_entity_types(cls, v):
        if not v:
            raise ValueError("At least one entity type is required")
        return v

    def for_direction(self, direction: Direction) -> DirectionSettings:
        return self.a_to_b if direction is Direction.A_TO_B else self.b_to_a

    def active_directions(self, mode: Optional[SyncMode] = None) -> List[Direction]:
        mode = mode or self.mode
        return [d for d in mode.directions if self.for_direction(d).enabled]

    @property
    def cycle_interval_seconds(self) -> float:
        """One cadence for the whole cycle: the shortest enabled interval."""
        intervals = [self.for_direction(d).interval_seconds for d in self.active_directions()]
        if not intervals:
            intervals = [self.a_to_b.interval_seconds, self.b_to_a.interval_seconds]
        return min(intervals)

    @property
    def min_trigger_gap(self) -> float:
        if self.min_trigger_gap_seconds is not None:
            return self.min_trigger_gap_seconds
        return self.cycle_interval_seconds / self.trigger_gap_divisor
