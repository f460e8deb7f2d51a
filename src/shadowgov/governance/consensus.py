"""
Shadow consensus.

Measures how far private (Shadow) approval departs from public (True Self)
approval on the same poll. Inputs are the two per-mode weighted tallies;
outputs are aggregate percentages, the signed gap ``shadow - true_self`` and
a coarse interpretation. Individual ballots never enter the snapshot.
"""

import logging

logger = logging.getLogger(__name__)
import math
from typing import Optional

from ..storage.governance_store import GovernanceStore
from .core import IdentityMode, ShadowConsensusSnapshot
from .tally import ModeTally, TallyResult

Z_95 = 1.96


def yes_percentage(mode_tally: ModeTally) -> float:
    """YES weight as a percentage of all weight cast in the mode."""
    if mode_tally.total <= 0:
        return 0.0
    return round(mode_tally.yes / mode_tally.total * 100.0, 2)


def confidence_half_width(percentage: float, ballots: int) -> float:
    """95% normal-approximation half-width, in percentage points."""
    if ballots <= 0:
        return 0.0
    p = percentage / 100.0
    return round(Z_95 * math.sqrt(p * (1 - p) / ballots) * 100.0, 2)


def interpret_gap(gap: float, confidence_interval: float) -> str:
    magnitude = abs(gap)
    if magnitude <= confidence_interval:
        return "aligned"
    if magnitude < 10:
        return "slight_divergence"
    if magnitude < 20:
        return "moderate_divergence"
    return "significant_divergence"


def trend_direction(gap: float) -> str:
    if abs(gap) < 3:
        return "stable"
    return "shadow_more_confident" if gap > 0 else "public_more_confident"


def build_snapshot(tally: TallyResult, computed_at: float) -> ShadowConsensusSnapshot:
    """Derive a snapshot from a tally without touching storage."""
    true_self = tally.by_mode[IdentityMode.TRUE_SELF]
    shadow = tally.by_mode[IdentityMode.SHADOW]

    true_self_pct = yes_percentage(true_self)
    shadow_pct = yes_percentage(shadow)
    gap = round(shadow_pct - true_self_pct, 2)
    interval = confidence_half_width(shadow_pct, shadow.ballots)

    return ShadowConsensusSnapshot(
        poll_id=tally.poll_id,
        true_self_yes_pct=true_self_pct,
        shadow_yes_pct=shadow_pct,
        gap=gap,
        computed_at=computed_at,
        true_self_ballots=true_self.ballots,
        shadow_ballots=shadow.ballots,
        confidence_interval=interval,
        interpretation=interpret_gap(gap, interval),
        trend=trend_direction(gap),
    )


class ShadowConsensusEngine:
    """Computes and persists shadow consensus snapshots."""

    def __init__(self, store: GovernanceStore):
        self.store = store

    def compute(self, tally: TallyResult, now: float) -> ShadowConsensusSnapshot:
        snapshot = build_snapshot(tally, now)
        self.store.upsert_consensus_snapshot(snapshot.to_dict())
        if snapshot.interpretation == "significant_divergence":
            logger.info(
                f"Poll {tally.poll_id} shows significant shadow divergence "
                f"({snapshot.gap:+.2f} points)"
            )
        return snapshot

    def latest(self, poll_id: str) -> Optional[ShadowConsensusSnapshot]:
        row = self.store.get_consensus_snapshot(poll_id)
        return ShadowConsensusSnapshot.from_row(row) if row else None
