"""
Conflict resolution strategies.

A policy is only consulted when the change cache reports that both systems
were edited since the last sync.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Type

from ..exceptions import ConfigurationError
from ..models.config import ConflictPolicyName
from ..models.sync import Direction, EntityRef

logger = logging.getLogger(__name__)


class ConflictResolution(str, Enum):
    """What happens to the job that detected the conflict."""
    PROCEED = "proceed"
    DROP = "drop"
    MANUAL_REVIEW = "manual_review"


@dataclass
class ConflictContext:
    """Everything a policy may look at."""
    direction: Direction
    entity_ref: EntityRef
    source_modified_at: Optional[datetime] = None
    target_modified_at: Optional[datetime] = None


class ConflictPolicy(ABC):
    """Abstract base class for conflict policies."""

    name: ConflictPolicyName

    @abstractmethod
    def resolve(self, context: ConflictContext) -> ConflictResolution:
        """Decide the fate of the change flowing in ``context.direction``."""
        pass


class SourceWins(ConflictPolicy):
    name = ConflictPolicyName.SOURCE_WINS

    def resolve(self, context: ConflictContext) -> ConflictResolution:
        return ConflictResolution.PROCEED


class TargetWins(ConflictPolicy):
    name = ConflictPolicyName.TARGET_WINS

    def resolve(self, context: ConflictContext) -> ConflictResolution:
        return ConflictResolution.DROP


class NewestWins(ConflictPolicy):
    """
    Compare the systems' last-modified timestamps.

    Ties go to the source. Without both timestamps there is nothing to
    compare, so the conflict is flagged for manual review.
    """
    name = ConflictPolicyName.NEWEST_WINS

    def resolve(self, context: ConflictContext) -> ConflictResolution:
        source_ts = _as_utc(context.source_modified_at)
        target_ts = _as_utc(context.target_modified_at)

        if source_ts is None or target_ts is None:
            logger.warning(
                f"Cannot compare timestamps for {context.entity_ref.key}; flagging for manual review"
            )
            return ConflictResolution.MANUAL_REVIEW

        if source_ts >= target_ts:
            return ConflictResolution.PROCEED
        return ConflictResolution.DROP


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


CONFLICT_POLICIES: Dict[ConflictPolicyName, Type[ConflictPolicy]] = {
    ConflictPolicyName.SOURCE_WINS: SourceWins,
    ConflictPolicyName.TARGET_WINS: TargetWins,
    ConflictPolicyName.NEWEST_WINS: NewestWins,
}


def get_conflict_policy(name) -> ConflictPolicy:
    """Get a policy instance by configured name."""
    try:
        return CONFLICT_POLICIES[ConflictPolicyName(name)]()
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unknown conflict policy: {name}")
