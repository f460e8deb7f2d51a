"""
Tally and quorum evaluation.

A tally is a pure read over committed ballots. Each ballot counts
``(base + base * delegators) * multiplier``, where the delegators are those
folded into it when it was recorded, minus any delegator who has since cast
a ballot of their own in the same mode. A delegator folded into more than
one ballot of a mode counts once, on the earliest-cast of them. Summation
order is fixed by vote id so the result is a deterministic function of the
committed rows.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..storage.governance_store import GovernanceStore
from .config import GovernanceConfig
from .core import IdentityMode, Poll, PollOutcome, QuorumConfig, QuorumModel, VoteChoice


@dataclass
class ModeTally:
    """Weighted totals for one identity mode."""

    yes: float = 0.0
    no: float = 0.0
    abstain: float = 0.0
    ballots: int = 0

    @property
    def total(self) -> float:
        return self.yes + self.no + self.abstain

    def add(self, choice: VoteChoice, weight: float) -> None:
        if choice == VoteChoice.YES:
            self.yes += weight
        elif choice == VoteChoice.NO:
            self.no += weight
        else:
            self.abstain += weight
        self.ballots += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "yes": round(self.yes, 6),
            "no": round(self.no, 6),
            "abstain": round(self.abstain, 6),
            "total": round(self.total, 6),
            "ballots": self.ballots,
        }


@dataclass
class TallyResult:
    """Weighted tally of a poll, by choice and by identity mode."""

    poll_id: str
    by_mode: Dict[IdentityMode, ModeTally] = field(
        default_factory=lambda: {mode: ModeTally() for mode in IdentityMode}
    )

    @property
    def yes(self) -> float:
        return sum(t.yes for t in self.by_mode.values())

    @property
    def no(self) -> float:
        return sum(t.no for t in self.by_mode.values())

    @property
    def abstain(self) -> float:
        return sum(t.abstain for t in self.by_mode.values())

    @property
    def total_weight(self) -> float:
        return self.yes + self.no + self.abstain

    @property
    def ballot_count(self) -> int:
        return sum(t.ballots for t in self.by_mode.values())

    @property
    def yes_ratio(self) -> Optional[float]:
        """YES share of decisive (non-abstain) weight, or None without any."""
        decisive = self.yes + self.no
        if decisive <= 0:
            return None
        return self.yes / decisive

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "yes": round(self.yes, 6),
            "no": round(self.no, 6),
            "abstain": round(self.abstain, 6),
            "total_weight": round(self.total_weight, 6),
            "ballot_count": self.ballot_count,
            "by_mode": {mode.value: t.to_dict() for mode, t in self.by_mode.items()},
        }


def ballot_weight(base: float, delegators: int, multiplier: float) -> float:
    return round((base + base * delegators) * multiplier, 6)


def counted_delegators(
    rows: Iterable[Dict[str, Any]], folded: Dict[str, List[str]]
) -> Dict[str, List[str]]:
    """Delegators each ballot counts, keyed by vote id.

    ``rows`` are the poll's vote rows and ``folded`` the delegators recorded
    on each. A delegator with a direct ballot in the mode is never counted;
    otherwise each ``(delegator, mode)`` counts on the earliest-cast ballot
    that lists it.
    """
    rows = list(rows)
    direct = {(row["voter_id"], row["identity_mode"]) for row in rows}
    claimed: Set[Tuple[str, str]] = set()
    counted: Dict[str, List[str]] = {}

    def first_cast(row: Dict[str, Any]):
        first = row.get("first_cast_at")
        return (row["cast_at"] if first is None else first, row["vote_id"])

    for row in sorted(rows, key=first_cast):
        kept = []
        for delegator in folded.get(row["vote_id"], []):
            key = (delegator, row["identity_mode"])
            if key in direct or key in claimed:
                continue
            claimed.add(key)
            kept.append(delegator)
        counted[row["vote_id"]] = kept
    return counted


def quorum_satisfied(
    quorum: QuorumConfig,
    total_weight: float,
    verified_user_count: int,
    latched: bool = False,
) -> bool:
    """Whether participation meets ``quorum``.

    Once latched (quorum was met earlier in the poll) the answer stays True.
    """
    if latched:
        return True
    absolute_ok = total_weight >= quorum.absolute_minimum
    percentage_ok = (
        verified_user_count > 0
        and total_weight >= verified_user_count * quorum.percentage_minimum / 100.0
    )
    if quorum.model == QuorumModel.ABSOLUTE:
        return absolute_ok
    if quorum.model == QuorumModel.PERCENTAGE:
        return percentage_ok
    return absolute_ok or percentage_ok


def decide_outcome(
    tally: TallyResult,
    quorum_met: bool,
    requires_supermajority: bool,
    supermajority_threshold: float,
) -> PollOutcome:
    """Outcome from a tally: NO_QUORUM, else majority or supermajority of YES."""
    if not quorum_met:
        return PollOutcome.NO_QUORUM
    ratio = tally.yes_ratio
    if ratio is None:
        return PollOutcome.FAILED
    if requires_supermajority:
        return PollOutcome.PASSED if ratio >= supermajority_threshold else PollOutcome.FAILED
    return PollOutcome.PASSED if ratio > 0.5 else PollOutcome.FAILED


class TallyEvaluator:
    """Aggregates ballots and evaluates quorum and outcome."""

    def __init__(self, store: GovernanceStore, config: GovernanceConfig):
        self.store = store
        self.config = config

    def tally(self, poll_id: str) -> TallyResult:
        rows = self.store.list_votes(poll_id)
        counted = counted_delegators(rows, self.store.list_vote_delegators(poll_id))
        base = self.config.base_vote_weight

        result = TallyResult(poll_id=poll_id)
        for row in rows:
            weight = ballot_weight(base, len(counted[row["vote_id"]]), row["multiplier"])
            result.by_mode[IdentityMode(row["identity_mode"])].add(
                VoteChoice(row["choice"]), weight
            )
        return result

    def quorum_met(self, poll: Poll, tally: TallyResult, verified_user_count: int) -> bool:
        return quorum_satisfied(
            poll.quorum,
            tally.total_weight,
            verified_user_count,
            latched=poll.quorum_reached_at is not None,
        )

    def outcome(self, poll: Poll, tally: TallyResult, verified_user_count: int) -> PollOutcome:
        return decide_outcome(
            tally,
            self.quorum_met(poll, tally, verified_user_count),
            poll.requires_supermajority,
            self.config.supermajority_threshold,
        )
