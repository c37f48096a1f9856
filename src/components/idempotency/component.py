"""
Idempotency ledger component.

Makes a side-effecting request safe to retry: the first request for a
(caller_id, key) pair claims the key inside a transaction, performs its
work in that same transaction, then stores its response and commits. Any
retry afterwards gets the stored response back unchanged.

Claim outcomes:
- no row: insert wins, caller owns the open transaction (Claimed)
- completed row: stored response is decoded and returned (AlreadyCompleted)
- claimed row, fresh: another request is working on it (RequestInFlightError)
- claimed row, older than the grace period: treated as abandoned and taken
  over with a compare-and-swap on claimed_at (Claimed, reclaimed=True)

The unique key on (caller_id, key) is the only mutual exclusion. A
concurrent duplicate blocks on the conflicting insert until the first
transaction finishes, then sees the completed row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.components.idempotency.codec import decode_headers, encode_headers
from src.components.idempotency.models import (
    AlreadyCompleted,
    Claimed,
    ClaimOutcome,
    HeaderCodecError,
    IdempotencyKey,
    LedgerCorruptionError,
    RequestInFlightError,
    SavedResponse,
)
from src.components.idempotency.ports import LedgerDatabasePort, UnitOfWorkPort
from src.core.entities import IdempotencyRecord

logger = logging.getLogger(__name__)


def _discard(uow: UnitOfWorkPort) -> None:
    uow.rollback()
    uow.close()


def _saved_response(record: IdempotencyRecord) -> SavedResponse:
    if record.response_status_code is None:
        raise LedgerCorruptionError(
            record.caller_id, record.idempotency_key, "completed row has no status code"
        )
    try:
        headers = decode_headers(record.response_headers or b"")
    except HeaderCodecError as e:
        raise LedgerCorruptionError(
            record.caller_id, record.idempotency_key, e.reason
        ) from e
    return SavedResponse(
        status_code=record.response_status_code,
        headers=tuple(headers),
        body=record.response_body or b"",
    )


def claim(
    db: LedgerDatabasePort,
    caller_id: str,
    key: IdempotencyKey,
    *,
    now: datetime,
    grace_seconds: int,
) -> ClaimOutcome:
    """
    Claim (caller_id, key) or fetch the response of a finished request.

    On Claimed the returned unit of work is left open; finish it with
    complete() or abandon().

    Raises:
        RequestInFlightError: a fresh claim exists for the key
        LedgerCorruptionError: the stored response cannot be decoded
        StorageError: database failure (nothing is left open)
    """
    uow = db.begin()
    try:
        repo = uow.idempotency
        if repo.insert_if_absent(caller_id, key.value, now):
            logger.debug("Claimed idempotency key %r for caller %s", key.value, caller_id)
            return Claimed(uow=uow, caller_id=caller_id, key=key)

        record = repo.get(caller_id, key.value)
        if record is None:
            # Row purged between the conflict and the read
            raise RequestInFlightError(caller_id, key.value)

        if record.is_completed:
            response = _saved_response(record)
            _discard(uow)
            logger.info(
                "Replaying saved response for key %r (caller %s)", key.value, caller_id
            )
            return AlreadyCompleted(response)

        if record.claimed_at >= now - timedelta(seconds=grace_seconds):
            raise RequestInFlightError(caller_id, key.value)

        if not repo.reclaim(caller_id, key.value, record.claimed_at, now):
            raise RequestInFlightError(caller_id, key.value)

        logger.warning(
            "Re-claimed abandoned idempotency key %r for caller %s (claimed at %s)",
            key.value,
            caller_id,
            record.claimed_at.isoformat(),
        )
        return Claimed(uow=uow, caller_id=caller_id, key=key, reclaimed=True)
    except BaseException:
        _discard(uow)
        raise


def complete(claimed: Claimed, response: SavedResponse, *, now: datetime) -> SavedResponse:
    """
    Store the response in the claimed row and commit the transaction.

    The protected work done on claimed.uow commits together with the
    response. On failure everything is rolled back and the error propagates.
    """
    uow = claimed.uow
    try:
        uow.idempotency.save_response(
            claimed.caller_id,
            claimed.key.value,
            response.status_code,
            encode_headers(response.headers),
            response.body,
            now,
        )
        uow.commit()
    except BaseException:
        uow.rollback()
        raise
    finally:
        uow.close()
    return response


def abandon(claimed: Claimed) -> None:
    """Roll back the claim and any work done under it."""
    _discard(claimed.uow)
    logger.info(
        "Abandoned claim on key %r for caller %s", claimed.key.value, claimed.caller_id
    )


def purge(db: LedgerDatabasePort, older_than: datetime) -> int:
    """Delete ledger rows created before older_than. Returns rows deleted."""
    with db.begin() as uow:
        deleted = uow.idempotency.delete_older_than(older_than)
        uow.commit()
    return deleted
