"""
Collaborators the curve controller depends on but does not own.
"""
import time
from abc import ABC, abstractmethod


class TokenLedger(ABC):
    """Token balances for every curve's mint."""

    @abstractmethod
    def mint(self, mint: bytes, amount: int, to_account: bytes) -> None:
        """Create amount tokens of mint in to_account."""
        pass

    @abstractmethod
    def burn(self, mint: bytes, amount: int, from_account: bytes) -> None:
        """Destroy amount tokens of mint held by from_account.

        Raises a ValidationError if the account holds fewer than amount.
        """
        pass

    @abstractmethod
    def balance_of(self, mint: bytes, account: bytes) -> int:
        pass


class PaymentRail(ABC):
    """Moves base currency between accounts."""

    @abstractmethod
    def transfer(self, from_account: bytes, to_account: bytes, amount: int) -> None:
        """Move amount from from_account to to_account.

        Raises a ValidationError if from_account holds fewer than amount.
        """
        pass

    @abstractmethod
    def balance_of(self, account: bytes) -> int:
        pass


class Clock(ABC):
    @abstractmethod
    def now(self) -> int:
        """Current unix timestamp in seconds."""
        pass


class SystemClock(Clock):
    def now(self) -> int:
        return int(time.time())


class AccessControl(ABC):
    """Verifies the identity behind a privileged call."""

    @abstractmethod
    def verify_caller(self, public_key_pem: str, signature: bytes, payload: bytes) -> bytes:
        """
        Check that the caller holds public_key_pem and may act.

        Args:
            public_key_pem: Caller's public key
            signature: Caller's signature over payload
            payload: Canonical bytes describing the call

        Returns:
            The caller's address

        Raises:
            Unauthorized: if the proof is invalid or the caller is not allowed
        """
        pass
