"""
External collaborator interfaces.

The engine consumes three services it does not own: identity/verification,
the token economy and a permanent archival mirror. Calls to the first two go
through ``CollaboratorGateway``, which bounds each call with a timeout and
maps unexpected failures onto ``ExternalServiceError``. A timed-out call that
is already running cannot be stopped; callers that must undo its effect pass
``on_late_success``, which runs if the call completes after the timeout.
"""

import logging

logger = logging.getLogger(__name__)
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import partial
from typing import Any, Callable, Dict, Optional

from ..errors.exceptions import ExternalServiceError, GovernanceError
from .core import IdentityMode


class IdentityService(ABC):
    """Identity issuance and humanity verification."""

    @abstractmethod
    def is_verified_human(self, user_id: str, mode: IdentityMode) -> bool:
        """Whether ``user_id`` is a verified human in ``mode``."""

    @abstractmethod
    def verified_user_count(self) -> int:
        """Current number of verified users."""

    @abstractmethod
    def reputation_score(self, user_id: str) -> float:
        """Reputation used for poll-creation eligibility."""

    @abstractmethod
    def poh_score(self, user_id: str) -> float:
        """Proof-of-humanity score used for petition signing."""


class TokenEconomy(ABC):
    """Token balances and escrow.

    ``escrow`` moves funds from a user's balance into the poll escrow
    identified by ``reference`` and raises ``InsufficientFundsError`` when the
    balance is short. ``release`` pays out of that escrow; ``burn`` removes
    the protocol fee from it.

    ``escrow`` and ``release`` must be idempotent per ``reference``: the engine
    retries a release after a failed settlement and releases a stake's
    reference to compensate for an escrow that completed after its timeout.
    """

    @abstractmethod
    def escrow(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        pass

    @abstractmethod
    def release(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        pass

    @abstractmethod
    def burn(self, amount: int, reference: str) -> None:
        pass


class ArchivalMirror(ABC):
    """Permanent, eventually consistent copy of governance records."""

    @abstractmethod
    def publish(self, record_type: str, record_id: str, payload: Dict[str, Any]) -> None:
        pass


class CollaboratorGateway:
    """Runs collaborator calls with a bounded timeout."""

    def __init__(self, timeout: float = 5.0, max_workers: int = 4):
        self.timeout = timeout
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="collaborator"
        )

    def call(
        self,
        service: str,
        operation: str,
        func: Callable[..., Any],
        *args,
        on_late_success: Optional[Callable[[], None]] = None,
    ) -> Any:
        """Invoke ``func(*args)``; engine errors raised by it propagate unchanged."""
        future = self.executor.submit(func, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as e:
            if not future.cancel() and on_late_success is not None:
                future.add_done_callback(
                    partial(self._after_timeout, service, operation, on_late_success)
                )
            logger.warning(f"{service}.{operation} timed out after {self.timeout}s")
            raise ExternalServiceError(
                f"{service}.{operation} timed out after {self.timeout}s",
                service=service,
                operation=operation,
                error_code="COLLABORATOR_TIMEOUT",
                cause=e,
            )
        except GovernanceError:
            raise
        except Exception as e:
            raise ExternalServiceError(
                f"{service}.{operation} failed: {e}",
                service=service,
                operation=operation,
                cause=e,
            )

    @staticmethod
    def _after_timeout(
        service: str, operation: str, compensate: Callable[[], None], future
    ) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.warning(f"{service}.{operation} completed after its timeout; compensating")
        try:
            compensate()
        except Exception as e:
            logger.error(f"Compensation for late {service}.{operation} failed: {e}")

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)


class GuardedIdentity:
    """``IdentityService`` calls routed through a ``CollaboratorGateway``."""

    def __init__(self, service: IdentityService, gateway: CollaboratorGateway):
        self.service = service
        self.gateway = gateway

    def is_verified_human(self, user_id: str, mode: IdentityMode) -> bool:
        return bool(
            self.gateway.call(
                "identity", "is_verified_human", self.service.is_verified_human, user_id, mode
            )
        )

    def verified_user_count(self) -> int:
        return int(
            self.gateway.call(
                "identity", "verified_user_count", self.service.verified_user_count
            )
        )

    def reputation_score(self, user_id: str) -> float:
        return float(
            self.gateway.call(
                "identity", "reputation_score", self.service.reputation_score, user_id
            )
        )

    def poh_score(self, user_id: str) -> float:
        return float(
            self.gateway.call("identity", "poh_score", self.service.poh_score, user_id)
        )


class GuardedEconomy:
    """``TokenEconomy`` calls routed through a ``CollaboratorGateway``."""

    def __init__(self, economy: TokenEconomy, gateway: CollaboratorGateway):
        self.economy = economy
        self.gateway = gateway

    def escrow(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        """Escrow under the gateway timeout.

        An escrow that lands after the timeout has already been reported as
        failed, so its funds are released straight back to the user.
        """
        self.gateway.call(
            "economy",
            "escrow",
            self.economy.escrow,
            user_id,
            mode,
            amount,
            reference,
            on_late_success=partial(
                self.economy.release, user_id, mode, amount, reference
            ),
        )

    def release(self, user_id: str, mode: IdentityMode, amount: int, reference: str) -> None:
        self.gateway.call(
            "economy", "release", self.economy.release, user_id, mode, amount, reference
        )

    def burn(self, amount: int, reference: str) -> None:
        self.gateway.call("economy", "burn", self.economy.burn, amount, reference)
