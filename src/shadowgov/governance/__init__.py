"""
Dual-identity governance decision engine.

This module provides the governance core of the platform with:
- Poll lifecycle management for parameter, general and emergency polls
- Constitutional guard over protected articles
- Weighted True Self / Shadow ballots with section multipliers and jitter
- Single-hop, cycle-free delegation per identity mode
- Quorum and outcome evaluation
- Shadow consensus divergence snapshots
- Conviction staking with escrowed settlement
- Tiered emergency rollback (founder, petition, automatic)
- Audit trail and archival mirroring
"""

from .archive import ArchiveRecord, MirrorPublisher
from .collaborators import (
    ArchivalMirror,
    CollaboratorGateway,
    GuardedEconomy,
    GuardedIdentity,
    IdentityService,
    TokenEconomy,
)
from .config import (
    GovernanceConfig,
    get_governance_config,
    reset_governance_config,
    set_governance_config,
)
from .consensus import ShadowConsensusEngine, build_snapshot
from .constitution import (
    DEFAULT_ARTICLES,
    ConstitutionalArticle,
    ConstitutionalGuard,
    ProtectedRule,
)
from .core import (
    Delegation,
    DelegationScope,
    IdentityMode,
    ParameterChange,
    Poll,
    PollKind,
    PollOutcome,
    PollStatus,
    QuorumConfig,
    QuorumModel,
    RollbackAction,
    RollbackStatus,
    RollbackTier,
    SectionDraw,
    ShadowConsensusSnapshot,
    StakePosition,
    StakeStatus,
    Vote,
    VoteChoice,
)
from .delegation import CircularDelegationDetector, DelegationResolver
from .engine import GovernanceEngine, MaintenanceReport
from .observability import EventType, GovernanceAuditTrail, GovernanceEvent
from .parameters import (
    DEFAULT_PARAMETERS,
    ParameterRegistry,
    ParameterType,
    ParameterWhitelistEntry,
)
from .proposal import PollRegistry, PollRequest
from .rollback import DetectionEvent, FounderAllowance, RollbackStateMachine
from .sections import SectionAssigner
from .staking import SettlementSummary, StakingPool
from .tally import ModeTally, TallyEvaluator, TallyResult
from .voting import VoteLedger

__all__ = [
    # Engine
    "GovernanceEngine",
    "MaintenanceReport",
    "GovernanceConfig",
    "get_governance_config",
    "set_governance_config",
    "reset_governance_config",
    # Core types
    "Poll",
    "PollKind",
    "PollStatus",
    "PollOutcome",
    "ParameterChange",
    "QuorumConfig",
    "QuorumModel",
    "IdentityMode",
    "Vote",
    "VoteChoice",
    "SectionDraw",
    "Delegation",
    "DelegationScope",
    "StakePosition",
    "StakeStatus",
    "RollbackAction",
    "RollbackStatus",
    "RollbackTier",
    "ShadowConsensusSnapshot",
    # Components
    "PollRegistry",
    "PollRequest",
    "ConstitutionalGuard",
    "ConstitutionalArticle",
    "ProtectedRule",
    "DEFAULT_ARTICLES",
    "ParameterRegistry",
    "ParameterWhitelistEntry",
    "ParameterType",
    "DEFAULT_PARAMETERS",
    "SectionAssigner",
    "VoteLedger",
    "DelegationResolver",
    "CircularDelegationDetector",
    "TallyEvaluator",
    "TallyResult",
    "ModeTally",
    "ShadowConsensusEngine",
    "build_snapshot",
    "StakingPool",
    "SettlementSummary",
    "RollbackStateMachine",
    "DetectionEvent",
    "FounderAllowance",
    # Collaborators
    "IdentityService",
    "TokenEconomy",
    "ArchivalMirror",
    "CollaboratorGateway",
    "GuardedIdentity",
    "GuardedEconomy",
    "MirrorPublisher",
    "ArchiveRecord",
    # Observability
    "EventType",
    "GovernanceEvent",
    "GovernanceAuditTrail",
]
