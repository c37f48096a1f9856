"""
Idempotency ledger models.

Value objects, claim outcomes and errors for the (caller_id, key) ledger
that makes publish requests safe to retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.core.ports.db import UnitOfWorkPort

# --- Constants ---

DEFAULT_MAX_KEY_LENGTH = 50
MIN_PRINTABLE = 0x20
MAX_PRINTABLE = 0x7E

# One response header: (name, raw value bytes). Order and duplicates matter.
HeaderPair = tuple[str, bytes]


# --- Error Types ---


class IdempotencyError(Exception):
    """Base idempotency ledger error."""

    pass


class IdempotencyKeyError(IdempotencyError):
    """Idempotency key rejected before touching storage (client error)."""

    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid idempotency key: {reason}")


class RequestInFlightError(IdempotencyError):
    """Another request holds a fresh claim on the same key."""

    def __init__(self, caller_id: str, key: str) -> None:
        self.caller_id = caller_id
        self.key = key
        super().__init__(
            f"A request with idempotency key '{key}' is already in progress"
        )


class LedgerCorruptionError(IdempotencyError):
    """A completed ledger row cannot be turned back into a response."""

    def __init__(self, caller_id: str, key: str, reason: str) -> None:
        self.caller_id = caller_id
        self.key = key
        self.reason = reason
        super().__init__(f"Ledger row for key '{key}' is unreadable: {reason}")


class HeaderCodecError(IdempotencyError):
    """Serialized header blob is truncated, oversized or not UTF-8."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Header blob invalid: {reason}")


# --- Value Objects ---


@dataclass(frozen=True)
class IdempotencyKey:
    """
    Validated idempotency key.

    Non-empty, at most max_length characters, printable ASCII only.
    Surrounding whitespace is significant and kept as-is.
    """

    value: str

    @classmethod
    def parse(cls, raw: str, max_length: int = DEFAULT_MAX_KEY_LENGTH) -> IdempotencyKey:
        if not raw:
            raise IdempotencyKeyError(raw, "The idempotency key cannot be empty")
        if len(raw) > max_length:
            raise IdempotencyKeyError(
                raw, f"The idempotency key must be at most {max_length} characters long"
            )
        if any(not (MIN_PRINTABLE <= ord(ch) <= MAX_PRINTABLE) for ch in raw):
            raise IdempotencyKeyError(
                raw, "The idempotency key must contain printable ASCII characters only"
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SavedResponse:
    """
    Response persisted in the ledger and replayed byte-for-byte.

    headers keep their original order (duplicates allowed).
    """

    status_code: int
    headers: tuple[HeaderPair, ...] = ()
    body: bytes = b""

    def header(self, name: str) -> bytes | None:
        """First value of a header, case-insensitive."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


# --- Claim Outcomes ---


@dataclass
class Claimed:
    """
    The caller owns the key and the open transaction holding the claim.

    Must be finished with complete() or abandon().
    """

    uow: UnitOfWorkPort
    caller_id: str
    key: IdempotencyKey
    reclaimed: bool = False


@dataclass(frozen=True)
class AlreadyCompleted:
    """A previous request finished; its response must be returned unchanged."""

    response: SavedResponse


ClaimOutcome = Claimed | AlreadyCompleted


# --- Configuration ---


@dataclass(frozen=True)
class IdempotencyConfig:
    """Ledger configuration."""

    max_key_length: int = DEFAULT_MAX_KEY_LENGTH
    claim_grace_seconds: int = 300  # Claimed rows older than this are abandoned
    retention_minutes: int = 1440
