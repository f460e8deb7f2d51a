"""
Delegation resolver.

Delegation is single-hop and scoped to one identity mode: a delegator's
ballot weight in a mode is added to the delegate's ballot in the same mode.
A delegation may be narrowed to parameter votes or to one poll, and may
carry an expiry after which it no longer applies.
Nobody who receives delegations may delegate onward, and nobody who has
delegated may receive, so the graph is a forest of depth one. A cycle check
over the active edges backs both rules.
"""

import logging

logger = logging.getLogger(__name__)
from typing import Dict, Iterable, List, Optional, Set

from ..errors.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from ..storage.governance_store import GovernanceStore
from .collaborators import GuardedIdentity
from .core import Delegation, DelegationScope, IdentityMode, Poll, new_id


class CircularDelegationDetector:
    """Detects circular delegations."""

    def would_create_cycle(
        self,
        delegator_id: str,
        delegate_id: str,
        edges: Dict[str, List[str]],
    ) -> bool:
        """Check if adding ``delegator -> delegate`` to ``edges`` closes a cycle.

        ``edges`` maps each delegator to the delegates it points at.
        """
        if delegator_id == delegate_id:
            return True

        graph = {node: list(targets) for node, targets in edges.items()}
        graph.setdefault(delegator_id, []).append(delegate_id)

        visited: Set[str] = set()
        on_stack: Set[str] = set()

        def has_cycle(node: str) -> bool:
            if node in on_stack:
                return True
            if node in visited:
                return False
            visited.add(node)
            on_stack.add(node)
            for target in graph.get(node, []):
                if has_cycle(target):
                    return True
            on_stack.remove(node)
            return False

        return any(has_cycle(node) for node in list(graph))


class DelegationResolver:
    """Creates, revokes and resolves delegations."""

    def __init__(self, store: GovernanceStore, identity: GuardedIdentity):
        self.store = store
        self.identity = identity
        self.cycle_detector = CircularDelegationDetector()

    def delegate(
        self,
        delegator_id: str,
        delegate_id: str,
        mode: IdentityMode,
        now: float,
        scope: DelegationScope = DelegationScope.ALL_GOVERNANCE,
        target_poll_id: Optional[str] = None,
        active_until: Optional[float] = None,
    ) -> Delegation:
        if not delegator_id or not delegate_id:
            raise ValidationError("Delegator and delegate are required", field="delegate_id")
        if (scope == DelegationScope.SPECIFIC_POLL) != bool(target_poll_id):
            raise ValidationError(
                "A target poll is required for, and only for, specific_poll delegations",
                field="target_poll_id",
                value=target_poll_id,
            )
        if active_until is not None and active_until <= now:
            raise ValidationError(
                "Delegation expiry must be in the future",
                field="active_until",
                value=active_until,
                expected=f"> {now}",
            )
        if delegator_id == delegate_id:
            raise ConflictError("Cannot delegate to self", error_code="SELF_DELEGATION")

        if not self.identity.is_verified_human(delegator_id, mode):
            raise UnauthorizedError(
                "Delegator is not a verified human", user_id=delegator_id, action="delegate"
            )
        if not self.identity.is_verified_human(delegate_id, mode):
            raise ValidationError(
                "Delegate is not a verified human",
                field="delegate_id",
                value=delegate_id,
            )

        with self.store.transaction():
            self.store.expire_delegations(now)
            if target_poll_id and self.store.get_poll(target_poll_id) is None:
                raise NotFoundError(
                    f"Poll {target_poll_id} not found",
                    resource_type="poll",
                    resource_id=target_poll_id,
                )
            if self.store.active_delegations_from_mode(delegator_id, mode.value):
                raise ConflictError(
                    f"Delegator already has an active {mode.value} delegation",
                    error_code="DUPLICATE_DELEGATION",
                )
            if self.store.active_delegations_to(delegator_id, mode.value):
                raise ConflictError(
                    "A delegate may not delegate onward",
                    error_code="DELEGATION_CHAIN",
                )
            if self.store.active_delegations_from_mode(delegate_id, mode.value):
                raise ConflictError(
                    "Target has delegated its own vote; delegations are single-hop",
                    error_code="DELEGATION_CHAIN",
                )
            if self.cycle_detector.would_create_cycle(
                delegator_id, delegate_id, self._edges(mode)
            ):
                raise ConflictError(
                    "Delegation would create a cycle", error_code="DELEGATION_CYCLE"
                )

            delegation = Delegation(
                delegation_id=new_id("dlg"),
                delegator_id=delegator_id,
                delegate_id=delegate_id,
                identity_mode=mode,
                created_at=now,
                scope=scope,
                target_poll_id=target_poll_id,
                active_until=active_until,
            )
            if not self.store.insert_delegation(delegation.to_dict()):
                raise ConflictError(
                    f"Delegator already has an active {mode.value} delegation",
                    error_code="DUPLICATE_DELEGATION",
                )

            other_modes = [
                row
                for row in self.store.active_delegations_from(delegator_id)
                if row["identity_mode"] != mode.value and row["delegate_id"] == delegate_id
            ]

        if other_modes:
            logger.warning(
                "Both identities of one delegator now point at the same delegate; "
                "this weakens identity separation"
            )
        logger.info(
            f"Delegation {delegation.delegation_id} created ({mode.value}, {scope.value})"
        )
        return delegation

    def _edges(self, mode: IdentityMode) -> Dict[str, List[str]]:
        edges: Dict[str, List[str]] = {}
        for row in self.store.list_active_delegations(mode.value):
            edges.setdefault(row["delegator_id"], []).append(row["delegate_id"])
        return edges

    def get(self, delegation_id: str) -> Delegation:
        row = self.store.get_delegation(delegation_id)
        if row is None:
            raise NotFoundError(
                f"Delegation {delegation_id} not found",
                resource_type="delegation",
                resource_id=delegation_id,
            )
        return Delegation.from_row(row)

    def revoke(self, delegation_id: str, requester_id: str, now: float) -> Delegation:
        """Revoke a delegation; only the delegator may do so.

        Ballots already recorded keep the weight they were cast with.
        """
        with self.store.transaction():
            delegation = self.get(delegation_id)
            if delegation.delegator_id != requester_id:
                raise UnauthorizedError(
                    "Only the delegator may revoke a delegation",
                    user_id=requester_id,
                    action="revoke_delegation",
                )
            if not self.store.revoke_delegation(delegation_id, now):
                raise StateError(
                    f"Delegation {delegation_id} is already revoked",
                    current_state="revoked",
                    expected_state="active",
                )
        logger.info(f"Delegation {delegation_id} revoked")
        return self.get(delegation_id)

    def expire(self, now: float) -> int:
        """Close every delegation whose expiry has passed."""
        with self.store.transaction():
            expired = self.store.expire_delegations(now)
        if expired:
            logger.info(f"Expired {expired} delegations")
        return expired

    def active_delegations(
        self, user_id: str, now: float, mode: Optional[IdentityMode] = None
    ) -> Dict[str, List[Delegation]]:
        """Live delegations touching ``user_id``, split by direction."""
        modes = [mode] if mode else list(IdentityMode)
        outgoing, incoming = [], []
        for m in modes:
            outgoing.extend(
                Delegation.from_row(r)
                for r in self.store.active_delegations_from_mode(user_id, m.value)
            )
            incoming.extend(
                Delegation.from_row(r)
                for r in self.store.active_delegations_to(user_id, m.value)
            )
        return {
            "outgoing": [d for d in outgoing if d.is_live(now)],
            "incoming": [d for d in incoming if d.is_live(now)],
        }

    def delegator_ids_for(
        self,
        delegate_id: str,
        mode: IdentityMode,
        poll: Poll,
        now: float,
        exclude: Iterable[str] = (),
    ) -> List[str]:
        """Delegators whose live ``mode`` delegation to ``delegate_id`` covers ``poll``."""
        skip = set(exclude)
        delegations = [
            Delegation.from_row(row)
            for row in self.store.active_delegations_to(delegate_id, mode.value)
        ]
        return [
            d.delegator_id
            for d in delegations
            if d.is_live(now) and d.covers(poll) and d.delegator_id not in skip
        ]
