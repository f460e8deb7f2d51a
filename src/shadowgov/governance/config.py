"""
Configuration for the governance engine.

All tunables live on ``GovernanceConfig``. Values can be overridden through
``SHADOWGOV_*`` environment variables, which are applied after construction
and before validation.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from ..errors.exceptions import ConfigurationError
from ..errors.recovery import RetryPolicy

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY


@dataclass
class GovernanceConfig:
    """Configuration for the governance system."""

    # Storage
    database_path: str = ":memory:"

    # Poll defaults
    default_quorum_model: str = "either"
    default_quorum_absolute: float = 1000.0
    default_quorum_percentage: float = 5.0
    default_poll_duration_days: float = 7.0
    emergency_poll_duration_days: float = 2.0
    emergency_quorum_factor: float = 0.5
    max_poll_duration_days: float = 30.0
    supermajority_threshold: float = 2.0 / 3.0
    min_title_length: int = 5
    max_title_length: int = 200
    max_description_length: int = 10000
    min_reputation_to_create_poll: float = 25.0

    # Votes
    base_vote_weight: float = 1.0
    max_vote_changes: int = 5
    section_count: int = 7
    multiplier_min: float = 0.7
    multiplier_max: float = 1.5
    jitter_max_seconds: int = 7200
    max_reasoning_length: int = 2000
    section_secret: str = "shadowgov-section-v1"

    # Staking
    minimum_stake: int = 10
    protocol_fee_rate: float = 0.005

    # Rollback
    rollback_window_hours: float = 72.0
    founder_id: Optional[str] = None
    founder_token_allowance: int = 10
    founder_transition_years: int = 3
    founder_authority_schedule: tuple = (100, 66, 33)
    petition_signature_threshold: int = 100
    petition_min_poh_score: float = 70.0
    rollback_freeze_threshold: int = 3
    rollback_freeze_days: float = 90.0
    automatic_detectors: tuple = ("constitutional_violation_detector",)

    # Collaborators
    collaborator_timeout_seconds: float = 5.0
    archive_workers: int = 2
    archive_retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    archive_circuit_failure_threshold: int = 5
    archive_circuit_recovery_seconds: float = 60.0

    # Audit trail
    audit_max_events: int = 10_000

    environment_overrides: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Apply environment overrides and validate."""
        self._apply_environment_overrides()
        self.validate()

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides."""
        env_mappings = {
            "SHADOWGOV_DATABASE_PATH": ("database_path", str),
            "SHADOWGOV_QUORUM_MODEL": ("default_quorum_model", str),
            "SHADOWGOV_QUORUM_ABSOLUTE": ("default_quorum_absolute", float),
            "SHADOWGOV_QUORUM_PERCENTAGE": ("default_quorum_percentage", float),
            "SHADOWGOV_POLL_DURATION_DAYS": ("default_poll_duration_days", float),
            "SHADOWGOV_MAX_VOTE_CHANGES": ("max_vote_changes", int),
            "SHADOWGOV_MULTIPLIER_MIN": ("multiplier_min", float),
            "SHADOWGOV_MULTIPLIER_MAX": ("multiplier_max", float),
            "SHADOWGOV_JITTER_MAX_SECONDS": ("jitter_max_seconds", int),
            "SHADOWGOV_SECTION_SECRET": ("section_secret", str),
            "SHADOWGOV_MINIMUM_STAKE": ("minimum_stake", int),
            "SHADOWGOV_PROTOCOL_FEE_RATE": ("protocol_fee_rate", float),
            "SHADOWGOV_ROLLBACK_WINDOW_HOURS": ("rollback_window_hours", float),
            "SHADOWGOV_FOUNDER_ID": ("founder_id", str),
            "SHADOWGOV_PETITION_THRESHOLD": ("petition_signature_threshold", int),
            "SHADOWGOV_COLLABORATOR_TIMEOUT": ("collaborator_timeout_seconds", float),
            "SHADOWGOV_AUDIT_MAX_EVENTS": ("audit_max_events", int),
        }

        for env_var, (attr_name, attr_type) in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            try:
                value = attr_type(env_value)
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid environment variable {env_var}={env_value}: {e}")
                continue
            setattr(self, attr_name, value)
            self.environment_overrides[env_var] = value

    def validate(self) -> None:
        """Validate configuration."""
        if self.default_quorum_model not in ("absolute", "percentage", "either"):
            raise ConfigurationError(
                "Quorum model must be absolute, percentage or either",
                config_key="default_quorum_model",
                config_value=self.default_quorum_model,
            )

        if self.default_quorum_absolute <= 0:
            raise ConfigurationError(
                "Default absolute quorum must be positive",
                config_key="default_quorum_absolute",
            )

        if not 0 < self.default_quorum_percentage <= 100:
            raise ConfigurationError(
                "Default quorum percentage must be in (0, 100]",
                config_key="default_quorum_percentage",
            )

        if not 0.5 <= self.supermajority_threshold < 1:
            raise ConfigurationError(
                "Supermajority threshold must be in [0.5, 1)",
                config_key="supermajority_threshold",
            )

        if not 0 < self.multiplier_min < self.multiplier_max:
            raise ConfigurationError(
                "Multiplier range must satisfy 0 < min < max",
                config_key="multiplier_min",
                config_value=(self.multiplier_min, self.multiplier_max),
            )

        if self.section_count < 1 or self.section_count > 255:
            raise ConfigurationError(
                "Section count must be between 1 and 255", config_key="section_count"
            )

        if self.max_vote_changes < 0:
            raise ConfigurationError(
                "Max vote changes cannot be negative", config_key="max_vote_changes"
            )

        if self.jitter_max_seconds < 0:
            raise ConfigurationError(
                "Jitter ceiling cannot be negative", config_key="jitter_max_seconds"
            )

        if not 0 <= self.protocol_fee_rate < 1:
            raise ConfigurationError(
                "Protocol fee rate must be in [0, 1)", config_key="protocol_fee_rate"
            )

        if self.minimum_stake <= 0:
            raise ConfigurationError(
                "Minimum stake must be positive", config_key="minimum_stake"
            )

        if self.rollback_window_hours <= 0:
            raise ConfigurationError(
                "Rollback window must be positive", config_key="rollback_window_hours"
            )

        if len(self.founder_authority_schedule) != self.founder_transition_years:
            raise ConfigurationError(
                "Founder authority schedule needs one entry per transition year",
                config_key="founder_authority_schedule",
            )

        if self.collaborator_timeout_seconds <= 0:
            raise ConfigurationError(
                "Collaborator timeout must be positive",
                config_key="collaborator_timeout_seconds",
            )

        if self.audit_max_events < 1:
            raise ConfigurationError(
                "Audit trail must retain at least one event",
                config_key="audit_max_events",
            )

    @property
    def rollback_window_seconds(self) -> float:
        return self.rollback_window_hours * SECONDS_PER_HOUR

    @property
    def founder_transition_seconds(self) -> float:
        return self.founder_transition_years * SECONDS_PER_YEAR

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = {}
        for f in fields(self):
            if f.name == "environment_overrides":
                continue
            value = getattr(self, f.name)
            if isinstance(value, RetryPolicy):
                value = value.to_dict()
            elif isinstance(value, tuple):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceConfig":
        """Create configuration from dictionary."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if isinstance(kwargs.get("archive_retry_policy"), dict):
            kwargs["archive_retry_policy"] = RetryPolicy(**kwargs["archive_retry_policy"])
        for key in ("founder_authority_schedule", "automatic_detectors"):
            if key in kwargs:
                kwargs[key] = tuple(kwargs[key])
        return cls(**kwargs)


_global_governance_config: Optional[GovernanceConfig] = None


def get_governance_config() -> GovernanceConfig:
    """Get the global governance configuration."""
    global _global_governance_config
    if _global_governance_config is None:
        _global_governance_config = GovernanceConfig()
    return _global_governance_config


def set_governance_config(config: GovernanceConfig) -> None:
    """Set the global governance configuration."""
    global _global_governance_config
    _global_governance_config = config


def reset_governance_config() -> None:
    """Reset the global governance configuration to defaults."""
    global _global_governance_config
    _global_governance_config = None
