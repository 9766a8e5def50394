"""
Idempotency ledger for settlement: fingerprint -> settlement state/result.

A settle call first acquires the fingerprint. Exactly one caller becomes the
owner and may submit; everybody else either gets the cached terminal record
or waits for the owner to finish.
"""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from database import SettlementRecordRow, get_session
from schemas import ErrorReason, SettleResponse

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SettlementState(str, Enum):
    RECEIVED = "received"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


PENDING_STATES = (SettlementState.RECEIVED, SettlementState.SUBMITTING, SettlementState.SUBMITTED)
TERMINAL_STATES = (SettlementState.CONFIRMED, SettlementState.REJECTED, SettlementState.FAILED)


@dataclass(frozen=True)
class SettlementRecord:
    fingerprint: str
    requirements_digest: str
    network: str
    state: SettlementState = SettlementState.RECEIVED
    tx_hash: Optional[str] = None
    transaction: str = ""
    payer: Optional[str] = None
    error_reason: Optional[ErrorReason] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: SettlementState, **changes) -> "SettlementRecord":
        return dataclasses.replace(self, state=state, updated_at=_utcnow(), **changes)

    def to_response(self) -> SettleResponse:
        if self.state == SettlementState.CONFIRMED:
            return SettleResponse(
                success=True,
                payer=self.payer,
                transaction=self.transaction,
                network=self.network,
            )
        return SettleResponse(
            success=False,
            errorReason=self.error_reason or ErrorReason.INVALID_TRANSACTION_STATE,
            transaction=self.transaction,
            network=self.network,
        )


@dataclass(frozen=True)
class Claim:
    """Outcome of acquire(): owner=True means the caller must drive the settlement."""
    owner: bool
    record: SettlementRecord


class IdempotencyStore(ABC):
    """Keyed store with atomic check-and-set on the fingerprint"""

    @abstractmethod
    async def acquire(self, fingerprint: str, requirements_digest: str, network: str) -> Claim:
        """Insert a RECEIVED marker, or return the existing record without ownership."""

    @abstractmethod
    async def update(self, record: SettlementRecord) -> None:
        """Persist progress of an owned, still pending record."""

    @abstractmethod
    async def complete(self, record: SettlementRecord) -> None:
        """Store a terminal record and wake any waiters."""

    @abstractmethod
    async def release(self, fingerprint: str) -> None:
        """Drop a pending marker so the fingerprint can be settled again."""

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[SettlementRecord]:
        """Current record for the fingerprint, if any."""

    @abstractmethod
    async def wait_for(self, fingerprint: str, timeout: float) -> Optional[SettlementRecord]:
        """
        Block until the fingerprint is terminal or released, or until timeout.

        Returns:
            The record as it stands afterwards; None if it was released.
        """

    async def close(self) -> None:
        pass


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    Process-local store. Terminal records are kept up to `max_records`,
    oldest evicted first; pending markers are never evicted.
    """

    def __init__(self, max_records: int = 100_000):
        self._max_records = max_records
        self._records: "OrderedDict[str, SettlementRecord]" = OrderedDict()
        self._events: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, fingerprint: str, requirements_digest: str, network: str) -> Claim:
        async with self._lock:
            existing = self._records.get(fingerprint)
            if existing is not None:
                return Claim(owner=False, record=existing)
            record = SettlementRecord(
                fingerprint=fingerprint,
                requirements_digest=requirements_digest,
                network=network,
            )
            self._records[fingerprint] = record
            self._events[fingerprint] = asyncio.Event()
            return Claim(owner=True, record=record)

    async def update(self, record: SettlementRecord) -> None:
        async with self._lock:
            self._records[record.fingerprint] = record

    async def complete(self, record: SettlementRecord) -> None:
        async with self._lock:
            self._records[record.fingerprint] = record
            self._records.move_to_end(record.fingerprint)
            event = self._events.pop(record.fingerprint, None)
            self._evict()
        if event is not None:
            event.set()

    async def release(self, fingerprint: str) -> None:
        async with self._lock:
            record = self._records.get(fingerprint)
            if record is not None and not record.terminal:
                del self._records[fingerprint]
            event = self._events.pop(fingerprint, None)
        if event is not None:
            event.set()

    async def get(self, fingerprint: str) -> Optional[SettlementRecord]:
        return self._records.get(fingerprint)

    async def wait_for(self, fingerprint: str, timeout: float) -> Optional[SettlementRecord]:
        event = self._events.get(fingerprint)
        if event is not None and timeout > 0:
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        return self._records.get(fingerprint)

    def _evict(self) -> None:
        overflow = len(self._records) - self._max_records
        if overflow <= 0:
            return
        for fingerprint in list(self._records):
            if overflow <= 0:
                break
            if self._records[fingerprint].terminal:
                del self._records[fingerprint]
                overflow -= 1


def _row_to_record(row: SettlementRecordRow) -> SettlementRecord:
    return SettlementRecord(
        fingerprint=row.fingerprint,
        requirements_digest=row.requirements_digest,
        network=row.network,
        state=SettlementState(row.state),
        tx_hash=row.tx_hash,
        transaction=row.transaction or "",
        payer=row.payer,
        error_reason=ErrorReason(row.error_reason) if row.error_reason else None,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _record_values(record: SettlementRecord) -> dict:
    return dict(
        requirements_digest=record.requirements_digest,
        network=record.network,
        state=record.state.value,
        tx_hash=record.tx_hash,
        transaction=record.transaction,
        payer=record.payer,
        error_reason=record.error_reason.value if record.error_reason else None,
        updated_at=record.updated_at,
    )


class SqlIdempotencyStore(IdempotencyStore):
    """
    Store shared by every worker through the settlement_records table.

    The primary key on fingerprint makes the claim atomic across processes.
    A pending row older than `stale_after_seconds` belongs to a worker that
    died mid-settlement and may be taken over; the ledger itself refuses to
    apply the same envelope twice.
    """

    def __init__(self, stale_after_seconds: float = 300.0, poll_interval: float = 0.5):
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._poll_interval = poll_interval

    async def acquire(self, fingerprint: str, requirements_digest: str, network: str) -> Claim:
        while True:
            record = SettlementRecord(
                fingerprint=fingerprint,
                requirements_digest=requirements_digest,
                network=network,
            )
            async with get_session() as session:
                session.add(
                    SettlementRecordRow(
                        fingerprint=fingerprint,
                        created_at=record.created_at,
                        **_record_values(record),
                    )
                )
                try:
                    await session.commit()
                    return Claim(owner=True, record=record)
                except IntegrityError:
                    await session.rollback()

            existing = await self.get(fingerprint)
            if existing is None:
                # released between our insert and read; try again
                continue
            if not existing.terminal and _utcnow() - existing.updated_at > self._stale_after:
                reclaimed = await self._reclaim(existing, requirements_digest)
                if reclaimed is not None:
                    logger.warning(f"Reclaimed stale settlement: fingerprint={fingerprint}")
                    return Claim(owner=True, record=reclaimed)
            return Claim(owner=False, record=existing)

    async def _reclaim(
        self, stale: SettlementRecord, requirements_digest: str
    ) -> Optional[SettlementRecord]:
        record = dataclasses.replace(
            stale,
            requirements_digest=requirements_digest,
            state=SettlementState.RECEIVED,
            updated_at=_utcnow(),
        )
        cutoff = _utcnow() - self._stale_after
        async with get_session() as session:
            # only one reclaimer can match: the winner moves updated_at past the cutoff
            result = await session.execute(
                update(SettlementRecordRow)
                .where(SettlementRecordRow.fingerprint == stale.fingerprint)
                .where(SettlementRecordRow.state == stale.state.value)
                .where(SettlementRecordRow.updated_at < cutoff)
                .values(version=SettlementRecordRow.version + 1, **_record_values(record))
            )
            await session.commit()
        return record if result.rowcount == 1 else None

    async def _write(self, record: SettlementRecord) -> None:
        async with get_session() as session:
            await session.execute(
                update(SettlementRecordRow)
                .where(SettlementRecordRow.fingerprint == record.fingerprint)
                .values(version=SettlementRecordRow.version + 1, **_record_values(record))
            )
            await session.commit()

    async def update(self, record: SettlementRecord) -> None:
        await self._write(record)

    async def complete(self, record: SettlementRecord) -> None:
        await self._write(record)

    async def release(self, fingerprint: str) -> None:
        async with get_session() as session:
            await session.execute(
                delete(SettlementRecordRow)
                .where(SettlementRecordRow.fingerprint == fingerprint)
                .where(SettlementRecordRow.state.in_([s.value for s in PENDING_STATES]))
            )
            await session.commit()

    async def get(self, fingerprint: str) -> Optional[SettlementRecord]:
        async with get_session() as session:
            row = await session.get(SettlementRecordRow, fingerprint)
            return _row_to_record(row) if row is not None else None

    async def wait_for(self, fingerprint: str, timeout: float) -> Optional[SettlementRecord]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            record = await self.get(fingerprint)
            if record is None or record.terminal:
                return record
            remaining = deadline - loop.time()
            if remaining <= 0:
                return record
            await asyncio.sleep(min(self._poll_interval, remaining))
