"""Shared fixtures and in-memory collaborators for governance tests."""

import logging

logger = logging.getLogger(__name__)
import os
import threading
from typing import Any, Dict, List, Set, Tuple

import pytest

from shadowgov.errors.exceptions import InsufficientFundsError
from shadowgov.errors.recovery import RetryPolicy
from shadowgov.governance.collaborators import (
    ArchivalMirror,
    CollaboratorGateway,
    GuardedEconomy,
    GuardedIdentity,
    IdentityService,
    TokenEconomy,
)
from shadowgov.governance.config import SECONDS_PER_DAY, GovernanceConfig
from shadowgov.governance.core import IdentityMode
from shadowgov.governance.engine import GovernanceEngine
from shadowgov.storage.governance_store import GovernanceStore

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def advance_days(self, days: float) -> float:
        return self.advance(days * SECONDS_PER_DAY)


class InMemoryIdentityService(IdentityService):
    """Identity service backed by dictionaries."""

    def __init__(self):
        self.modes: Dict[str, Set[IdentityMode]] = {}
        self.reputation: Dict[str, float] = {}
        self.poh: Dict[str, float] = {}

    def verify(
        self,
        user_id: str,
        modes=(IdentityMode.TRUE_SELF, IdentityMode.SHADOW),
        reputation: float = 50.0,
        poh: float = 80.0,
    ) -> str:
        self.modes[user_id] = set(modes)
        self.reputation[user_id] = reputation
        self.poh[user_id] = poh
        return user_id

    def is_verified_human(self, user_id: str, mode: IdentityMode) -> bool:
        return mode in self.modes.get(user_id, set())

    def verified_user_count(self) -> int:
        return len(self.modes)

    def reputation_score(self, user_id: str) -> float:
        return self.reputation.get(user_id, 0.0)

    def poh_score(self, user_id: str) -> float:
        return self.poh.get(user_id, 0.0)


class InMemoryTokenEconomy(TokenEconomy):
    """Token balances with idempotent releases keyed by reference."""

    def __init__(self):
        self.balances: Dict[Tuple[str, IdentityMode], int] = {}
        self.escrowed: Dict[str, int] = {}
        self.releases: List[Tuple[str, IdentityMode, int, str]] = []
        self.burned: List[Tuple[int, str]] = []
        self._released_refs: Set[str] = set()
        self._lock = threading.Lock()

    def fund(self, user_id: str, amount: int, mode: IdentityMode = IdentityMode.TRUE_SELF):
        self.balances[(user_id, mode)] = self.balances.get((user_id, mode), 0) + amount

    def balance(self, user_id: str, mode: IdentityMode = IdentityMode.TRUE_SELF) -> int:
        return self.balances.get((user_id, mode), 0)

    def escrow(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        with self._lock:
            if self.balances.get((user_id, mode), 0) < amount:
                raise InsufficientFundsError(
                    "Insufficient balance for escrow", user_id=user_id, amount=amount
                )
            self.balances[(user_id, mode)] -= amount
            self.escrowed[reference] = amount

    def release(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        with self._lock:
            if reference in self._released_refs:
                return
            self._released_refs.add(reference)
            self.balances[(user_id, mode)] = self.balances.get((user_id, mode), 0) + amount
            self.releases.append((user_id, mode, amount, reference))

    def burn(self, amount: int, reference: str) -> None:
        with self._lock:
            self.burned.append((amount, reference))

    @property
    def total_burned(self) -> int:
        return sum(amount for amount, _ in self.burned)


class RecordingMirror(ArchivalMirror):
    """Mirror that records publications and can be told to fail."""

    def __init__(self, failures: int = 0, error: Exception = None):
        self.records: List[Tuple[str, str, Dict[str, Any]]] = []
        self.failures = failures
        self.error = error or ConnectionError("mirror unavailable")
        self.calls = 0
        self._lock = threading.Lock()

    def publish(self, record_type: str, record_id: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise self.error
            self.records.append((record_type, record_id, payload))

    def of_type(self, record_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for t, _, p in self.records if t == record_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return InMemoryIdentityService()


@pytest.fixture
def economy():
    return InMemoryTokenEconomy()


@pytest.fixture
def mirror():
    return RecordingMirror()


@pytest.fixture
def governance_config(monkeypatch):
    """Configuration tuned for tests: small thresholds, no retry delays."""
    for name in list(os.environ):
        if name.startswith("SHADOWGOV_"):
            monkeypatch.delenv(name, raising=False)
    return GovernanceConfig(
        founder_id="founder",
        petition_signature_threshold=3,
        default_quorum_absolute=3.0,
        archive_retry_policy=RetryPolicy(max_retries=2, base_delay=0.0, jitter=False),
        collaborator_timeout_seconds=2.0,
    )


@pytest.fixture
def store():
    store = GovernanceStore().open()
    yield store
    store.close()


@pytest.fixture
def gateway():
    gateway = CollaboratorGateway(timeout=2.0)
    yield gateway
    gateway.shutdown()


@pytest.fixture
def guarded_identity(identity, gateway):
    return GuardedIdentity(identity, gateway)


@pytest.fixture
def guarded_economy(economy, gateway):
    return GuardedEconomy(economy, gateway)


@pytest.fixture
def engine(identity, economy, mirror, governance_config, clock):
    engine = GovernanceEngine(
        identity=identity,
        economy=economy,
        mirror=mirror,
        config=governance_config,
        clock=clock,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def population(identity):
    """Ten verified users with both identities, plus the founder."""
    identity.verify("founder", reputation=100.0, poh=100.0)
    return [identity.verify(f"user{i}") for i in range(10)]
