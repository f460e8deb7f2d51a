"""
Parameter whitelist.

Only whitelisted parameters can be changed by a ``parameter_vote`` poll. Each
entry carries its type and bounds plus the vote requirements a poll on it
inherits: quorum model and thresholds, minimum duration, supermajority and
verification flags.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors.exceptions import NotFoundError, StateError, ValidationError
from ..storage.governance_store import GovernanceStore
from .config import SECONDS_PER_DAY
from .core import QuorumConfig, QuorumModel, decode_value, encode_value

MAX_TEXT_LENGTH = 1000


class ParameterType(Enum):
    """Value type of a whitelisted parameter."""

    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    TEXT = "text"


@dataclass
class ParameterWhitelistEntry:
    """A parameter the community may vote on."""

    name: str
    category: str
    value_type: ParameterType
    default_value: Any
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    current_value: Any = None
    description: str = ""
    requires_supermajority: bool = False
    minimum_duration_days: float = 7.0
    requires_verification: bool = True
    quorum_model: QuorumModel = QuorumModel.EITHER
    quorum_absolute: float = 1000.0
    quorum_percentage: float = 5.0
    is_voteable: bool = True
    is_emergency_parameter: bool = False
    rollback_count: int = 0
    frozen_until: Optional[float] = None

    def __post_init__(self):
        if self.current_value is None:
            self.current_value = self.default_value

    @property
    def quorum(self) -> QuorumConfig:
        return QuorumConfig(
            model=self.quorum_model,
            absolute_minimum=self.quorum_absolute,
            percentage_minimum=self.quorum_percentage,
        )

    def coerce(self, raw: Any) -> Any:
        """Convert ``raw`` to this entry's type, enforcing bounds."""
        if self.value_type == ParameterType.BOOLEAN:
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
                return raw.strip().lower() == "true"
            raise ValidationError(
                f"{self.name} must be a boolean",
                field=self.name,
                value=raw,
                expected="true or false",
            )

        if self.value_type == ParameterType.TEXT:
            if not isinstance(raw, str):
                raise ValidationError(
                    f"{self.name} must be text", field=self.name, value=raw
                )
            if len(raw) > MAX_TEXT_LENGTH:
                raise ValidationError(
                    f"{self.name} exceeds {MAX_TEXT_LENGTH} characters",
                    field=self.name,
                    value=len(raw),
                    expected=f"<= {MAX_TEXT_LENGTH}",
                )
            return raw

        if isinstance(raw, bool):
            raise ValidationError(
                f"{self.name} must be numeric", field=self.name, value=raw
            )
        try:
            number = Decimal(str(raw).strip())
        except InvalidOperation:
            raise ValidationError(
                f"{self.name} must be numeric",
                field=self.name,
                value=raw,
                expected=self.value_type.value,
            )
        if not number.is_finite():
            raise ValidationError(
                f"{self.name} must be finite", field=self.name, value=raw
            )

        if self.value_type == ParameterType.INTEGER:
            if number != number.to_integral_value():
                raise ValidationError(
                    f"{self.name} must be an integer",
                    field=self.name,
                    value=raw,
                    expected="integer",
                )
            value: Any = int(number)
        else:
            value = float(number)

        if self.min_value is not None and value < self.min_value:
            raise ValidationError(
                f"{self.name} must be >= {self.min_value}",
                field=self.name,
                value=value,
                expected=f">= {self.min_value}",
            )
        if self.max_value is not None and value > self.max_value:
            raise ValidationError(
                f"{self.name} must be <= {self.max_value}",
                field=self.name,
                value=value,
                expected=f"<= {self.max_value}",
            )
        return value

    def to_row(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "value_type": self.value_type.value,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "default_value": encode_value(self.default_value),
            "current_value": encode_value(self.current_value),
            "description": self.description,
            "requires_supermajority": int(self.requires_supermajority),
            "minimum_duration_days": self.minimum_duration_days,
            "requires_verification": int(self.requires_verification),
            "quorum_model": self.quorum_model.value,
            "quorum_absolute": self.quorum_absolute,
            "quorum_percentage": self.quorum_percentage,
            "is_voteable": int(self.is_voteable),
            "is_emergency_parameter": int(self.is_emergency_parameter),
            "rollback_count": self.rollback_count,
            "frozen_until": self.frozen_until,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ParameterWhitelistEntry":
        return cls(
            name=row["name"],
            category=row["category"],
            value_type=ParameterType(row["value_type"]),
            min_value=row["min_value"],
            max_value=row["max_value"],
            default_value=decode_value(row["default_value"]),
            current_value=decode_value(row["current_value"]),
            description=row["description"] or "",
            requires_supermajority=bool(row["requires_supermajority"]),
            minimum_duration_days=row["minimum_duration_days"],
            requires_verification=bool(row["requires_verification"]),
            quorum_model=QuorumModel(row["quorum_model"]),
            quorum_absolute=row["quorum_absolute"],
            quorum_percentage=row["quorum_percentage"],
            is_voteable=bool(row["is_voteable"]),
            is_emergency_parameter=bool(row["is_emergency_parameter"]),
            rollback_count=row["rollback_count"],
            frozen_until=row["frozen_until"],
        )


def _entry(name, category, value_type, default, lo=None, hi=None, description="", **kw):
    return ParameterWhitelistEntry(
        name=name,
        category=category,
        value_type=value_type,
        default_value=default,
        min_value=lo,
        max_value=hi,
        description=description,
        **kw,
    )


DEFAULT_PARAMETERS: List[ParameterWhitelistEntry] = [
    _entry("poll_creation_cost_general", "economic", ParameterType.INTEGER, 500, 50, 1000,
           "PollCoin cost to create a general poll"),
    _entry("poll_creation_cost_governance", "economic", ParameterType.INTEGER, 1000, 100, 5000,
           "PollCoin cost to create a governance poll"),
    _entry("minimum_reputation_to_post", "social", ParameterType.INTEGER, 20, 5, 50,
           "Reputation required to post"),
    _entry("minimum_reputation_to_create_poll", "social", ParameterType.INTEGER, 25, 10, 100,
           "Reputation required to create a poll"),
    _entry("pentos_ai_public_access", "technical", ParameterType.BOOLEAN, True,
           description="Whether the assistant is publicly reachable"),
    _entry("pentos_ai_usage_limits", "technical", ParameterType.INTEGER, 100, 10, 999999,
           "Daily assistant requests per user"),
    _entry("gratium_staking_apy_rate", "economic", ParameterType.DECIMAL, 8.0, 2.0, 15.0,
           "Annual staking yield in percent"),
    _entry("reward_per_poll_participant", "economic", ParameterType.INTEGER, 50, 10, 150,
           "Gratium reward for voting in a poll"),
    _entry("thought_chamber_duration_days", "governance", ParameterType.INTEGER, 7, 3, 14,
           "Discussion period before a vote"),
    _entry("default_quorum_absolute", "governance", ParameterType.INTEGER, 1000, 500, 5000,
           "Default absolute quorum",
           requires_supermajority=True, minimum_duration_days=14.0,
           quorum_absolute=2000.0, quorum_percentage=10.0),
    _entry("default_quorum_percentage", "governance", ParameterType.DECIMAL, 5.0, 1.0, 10.0,
           "Default quorum as a percentage of verified users"),
    _entry("max_vote_changes_per_poll", "governance", ParameterType.INTEGER, 5, 1, 10,
           "Ballot changes allowed per poll"),
    _entry("vote_timing_jitter_max_seconds", "privacy", ParameterType.INTEGER, 7200, 3600, 14400,
           "Upper bound of displayed-timestamp jitter"),
    _entry("section_multiplier_min", "governance", ParameterType.DECIMAL, 0.7, 0.5, 0.9,
           "Lower bound of the section multiplier"),
    _entry("section_multiplier_max", "governance", ParameterType.DECIMAL, 1.5, 1.1, 2.0,
           "Upper bound of the section multiplier"),
]


class ParameterRegistry:
    """Store-backed access to the parameter whitelist."""

    def __init__(self, store: GovernanceStore):
        self.store = store

    def seed(self, entries: Optional[List[ParameterWhitelistEntry]] = None) -> int:
        """Insert missing entries; existing rows keep their live values."""
        inserted = 0
        for entry in entries if entries is not None else DEFAULT_PARAMETERS:
            if self.store.seed_parameter(entry.to_row()):
                inserted += 1
        return inserted

    def get(self, name: str) -> ParameterWhitelistEntry:
        row = self.store.get_parameter(name)
        if row is None:
            raise NotFoundError(
                f"Parameter '{name}' is not whitelisted",
                resource_type="parameter",
                resource_id=name,
            )
        return ParameterWhitelistEntry.from_row(row)

    def find(self, name: str) -> Optional[ParameterWhitelistEntry]:
        row = self.store.get_parameter(name)
        return ParameterWhitelistEntry.from_row(row) if row else None

    def list(self) -> List[ParameterWhitelistEntry]:
        return [ParameterWhitelistEntry.from_row(r) for r in self.store.list_parameters()]

    def live_value(self, name: str, default: Any) -> Any:
        """Current value of ``name``, or ``default`` when it is not whitelisted."""
        entry = self.find(name)
        if entry is None or entry.current_value is None:
            return default
        return entry.current_value

    def validate_change(self, name: str, proposed_value: Any, now: float):
        """Return ``(entry, coerced_value)`` or raise."""
        entry = self.find(name)
        if entry is None:
            raise ValidationError(
                f"Parameter '{name}' is not whitelisted",
                field="parameter_name",
                value=name,
            )
        if not entry.is_voteable:
            if entry.frozen_until is not None:
                if entry.frozen_until > now:
                    raise StateError(
                        f"Parameter '{name}' is frozen after repeated rollbacks",
                        current_state="frozen",
                        expected_state="voteable",
                    )
                # freeze lapsed; the next sweep clears the flag
                return entry, entry.coerce(proposed_value)
            raise StateError(
                f"Parameter '{name}' is not voteable",
                current_state="locked",
                expected_state="voteable",
            )
        return entry, entry.coerce(proposed_value)

    def apply(self, name: str, value: Any, now: float) -> Any:
        """Write an enacted value; returns the value it replaced."""
        entry = self.get(name)
        self.store.set_parameter_value(name, encode_value(value), now)
        logger.info(f"Parameter {name} changed from {entry.current_value!r} to {value!r}")
        return entry.current_value

    def revert(
        self, name: str, previous_value: Any, now: float, freeze_threshold: int, freeze_days: float
    ) -> ParameterWhitelistEntry:
        """Restore ``previous_value`` and freeze the parameter at the threshold."""
        row = self.store.record_parameter_rollback(
            name,
            encode_value(previous_value),
            now,
            freeze_threshold,
            now + freeze_days * SECONDS_PER_DAY,
        )
        entry = ParameterWhitelistEntry.from_row(row)
        if not entry.is_voteable:
            logger.warning(
                f"Parameter {name} frozen until {entry.frozen_until} "
                f"after {entry.rollback_count} rollbacks"
            )
        return entry

    def thaw(self, now: float) -> int:
        thawed = self.store.thaw_parameters(now)
        if thawed:
            logger.info(f"Thawed {thawed} frozen parameter(s)")
        return thawed
