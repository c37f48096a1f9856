"""
Idempotency ledger component.

Claim / replay / complete for (caller_id, idempotency_key) pairs.
"""

from src.components.idempotency.codec import decode_headers, encode_headers
from src.components.idempotency.component import abandon, claim, complete, purge
from src.components.idempotency.models import (
    DEFAULT_MAX_KEY_LENGTH,
    AlreadyCompleted,
    Claimed,
    ClaimOutcome,
    HeaderCodecError,
    HeaderPair,
    IdempotencyConfig,
    IdempotencyError,
    IdempotencyKey,
    IdempotencyKeyError,
    LedgerCorruptionError,
    RequestInFlightError,
    SavedResponse,
)
from src.components.idempotency.ports import LedgerDatabasePort

__all__ = [
    # Component
    "abandon",
    "claim",
    "complete",
    "purge",
    # Codec
    "decode_headers",
    "encode_headers",
    # Models
    "DEFAULT_MAX_KEY_LENGTH",
    "AlreadyCompleted",
    "Claimed",
    "ClaimOutcome",
    "HeaderPair",
    "IdempotencyConfig",
    "IdempotencyKey",
    "SavedResponse",
    # Errors
    "HeaderCodecError",
    "IdempotencyError",
    "IdempotencyKeyError",
    "LedgerCorruptionError",
    "RequestInFlightError",
    # Ports
    "LedgerDatabasePort",
]
