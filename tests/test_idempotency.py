"""
Idempotency store tests. The SQL backend runs on sqlite+aiosqlite in a temp dir.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from database import SettlementRecordRow, close_database, get_session, init_database
from idempotency import (
    InMemoryIdempotencyStore,
    SettlementRecord,
    SettlementState,
    SqlIdempotencyStore,
    _utcnow,
)
from schemas import ErrorReason

FP = "a" * 64
DIGEST = "d" * 64


def confirmed(record: SettlementRecord) -> SettlementRecord:
    return record.advance(
        SettlementState.CONFIRMED,
        tx_hash="f" * 64,
        transaction="AAAA",
        payer="GPAYER",
    )


# ---- Records ----
def test_confirmed_record_response():
    record = confirmed(SettlementRecord(fingerprint=FP, requirements_digest=DIGEST, network="stellar-testnet"))
    response = record.to_response()
    assert response.success is True
    assert response.payer == "GPAYER"
    assert response.transaction == "AAAA"
    assert response.network == "stellar-testnet"
    assert record.terminal


def test_failed_record_response():
    record = SettlementRecord(fingerprint=FP, requirements_digest=DIGEST, network="stellar-testnet").advance(
        SettlementState.FAILED, error_reason=ErrorReason.SUBMISSION_FAILED
    )
    response = record.to_response()
    assert response.success is False
    assert response.errorReason == ErrorReason.SUBMISSION_FAILED
    assert response.transaction == ""


# ---- Memory backend ----
@pytest.mark.asyncio
async def test_memory_single_owner():
    store = InMemoryIdempotencyStore()
    first = await store.acquire(FP, DIGEST, "stellar-testnet")
    second = await store.acquire(FP, DIGEST, "stellar-testnet")
    assert first.owner is True
    assert second.owner is False
    assert second.record.state == SettlementState.RECEIVED


@pytest.mark.asyncio
async def test_memory_concurrent_acquire():
    store = InMemoryIdempotencyStore()
    claims = await asyncio.gather(*(store.acquire(FP, DIGEST, "stellar-testnet") for _ in range(10)))
    assert sum(1 for claim in claims if claim.owner) == 1


@pytest.mark.asyncio
async def test_memory_release_allows_new_owner():
    store = InMemoryIdempotencyStore()
    await store.acquire(FP, DIGEST, "stellar-testnet")
    await store.release(FP)
    assert await store.get(FP) is None
    assert (await store.acquire(FP, DIGEST, "stellar-testnet")).owner is True


@pytest.mark.asyncio
async def test_memory_release_keeps_terminal_records():
    store = InMemoryIdempotencyStore()
    claim = await store.acquire(FP, DIGEST, "stellar-testnet")
    await store.complete(confirmed(claim.record))
    await store.release(FP)
    assert (await store.get(FP)).state == SettlementState.CONFIRMED


@pytest.mark.asyncio
async def test_memory_waiter_wakes_on_complete():
    store = InMemoryIdempotencyStore()
    claim = await store.acquire(FP, DIGEST, "stellar-testnet")

    waiter = asyncio.create_task(store.wait_for(FP, timeout=5))
    await asyncio.sleep(0.01)
    await store.complete(confirmed(claim.record))

    record = await asyncio.wait_for(waiter, timeout=1)
    assert record.state == SettlementState.CONFIRMED


@pytest.mark.asyncio
async def test_memory_waiter_sees_release():
    store = InMemoryIdempotencyStore()
    await store.acquire(FP, DIGEST, "stellar-testnet")

    waiter = asyncio.create_task(store.wait_for(FP, timeout=5))
    await asyncio.sleep(0.01)
    await store.release(FP)

    assert await asyncio.wait_for(waiter, timeout=1) is None


@pytest.mark.asyncio
async def test_memory_wait_times_out_on_pending():
    store = InMemoryIdempotencyStore()
    await store.acquire(FP, DIGEST, "stellar-testnet")
    record = await store.wait_for(FP, timeout=0.05)
    assert record.state == SettlementState.RECEIVED


@pytest.mark.asyncio
async def test_memory_evicts_oldest_terminal_records():
    store = InMemoryIdempotencyStore(max_records=2)
    pending = await store.acquire("0" * 64, DIGEST, "stellar-testnet")
    for fingerprint in ("1" * 64, "2" * 64, "3" * 64):
        claim = await store.acquire(fingerprint, DIGEST, "stellar-testnet")
        await store.complete(confirmed(claim.record))

    assert await store.get("0" * 64) == pending.record
    assert await store.get("1" * 64) is None
    assert await store.get("2" * 64) is None
    assert (await store.get("3" * 64)).terminal


# ---- SQL backend ----
@pytest_asyncio.fixture
async def sql_store(tmp_path):
    await init_database(
        f"sqlite+aiosqlite:///{tmp_path / 'settlements.db'}",
        pool_size=5,
        max_overflow=0,
        pool_recycle=600,
    )
    yield SqlIdempotencyStore(stale_after_seconds=60, poll_interval=0.01)
    await close_database()


@pytest.mark.asyncio
async def test_sql_single_owner(sql_store):
    first = await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    second = await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    assert first.owner is True
    assert second.owner is False
    assert second.record.fingerprint == FP
    assert second.record.requirements_digest == DIGEST


@pytest.mark.asyncio
async def test_sql_complete_and_get(sql_store):
    claim = await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    await sql_store.update(claim.record.advance(SettlementState.SUBMITTING, payer="GPAYER"))
    await sql_store.complete(confirmed(claim.record))

    record = await sql_store.get(FP)
    assert record.state == SettlementState.CONFIRMED
    assert record.tx_hash == "f" * 64
    assert record.transaction == "AAAA"
    assert record.updated_at.tzinfo is not None

    async with get_session() as session:
        row = await session.get(SettlementRecordRow, FP)
        assert row.version == 2


@pytest.mark.asyncio
async def test_sql_failed_reason_round_trips(sql_store):
    claim = await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    await sql_store.complete(
        claim.record.advance(SettlementState.FAILED, error_reason=ErrorReason.INVALID_TRANSACTION)
    )
    record = await sql_store.get(FP)
    assert record.error_reason == ErrorReason.INVALID_TRANSACTION
    assert record.to_response().errorReason == ErrorReason.INVALID_TRANSACTION


@pytest.mark.asyncio
async def test_sql_release_only_pending(sql_store):
    await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    await sql_store.release(FP)
    assert await sql_store.get(FP) is None

    claim = await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    await sql_store.complete(confirmed(claim.record))
    await sql_store.release(FP)
    assert (await sql_store.get(FP)).state == SettlementState.CONFIRMED


@pytest.mark.asyncio
async def test_sql_wait_for_terminal(sql_store):
    claim = await sql_store.acquire(FP, DIGEST, "stellar-testnet")

    async def finish():
        await asyncio.sleep(0.05)
        await sql_store.complete(confirmed(claim.record))

    finisher = asyncio.create_task(finish())
    record = await sql_store.wait_for(FP, timeout=2)
    await finisher
    assert record.state == SettlementState.CONFIRMED


@pytest.mark.asyncio
async def test_sql_wait_times_out_on_pending(sql_store):
    await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    record = await sql_store.wait_for(FP, timeout=0.05)
    assert record.state == SettlementState.RECEIVED


@pytest.mark.asyncio
async def test_sql_stale_pending_row_is_reclaimed(sql_store):
    await sql_store.acquire(FP, DIGEST, "stellar-testnet")
    async with get_session() as session:
        await session.execute(
            update(SettlementRecordRow)
            .where(SettlementRecordRow.fingerprint == FP)
            .values(state=SettlementState.SUBMITTING.value, updated_at=_utcnow() - timedelta(hours=1))
        )
        await session.commit()

    claim = await sql_store.acquire(FP, "e" * 64, "stellar-testnet")

    assert claim.owner is True
    assert claim.record.state == SettlementState.RECEIVED
    assert (await sql_store.get(FP)).requirements_digest == "e" * 64
    assert (await sql_store.acquire(FP, "e" * 64, "stellar-testnet")).owner is False
