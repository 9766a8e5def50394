"""
SettlementCoordinator tests: one submission per envelope, cached terminal results.
"""

import asyncio

import pytest

from fakes import (
    NETWORK,
    PAYER,
    FakeLedgerClient,
    envelope,
    make_mechanism,
    make_payload,
    make_requirements,
    make_transaction,
)
from idempotency import InMemoryIdempotencyStore, SettlementState
from ledger import InclusionState, LedgerRejectedError, LedgerTransientError, TransactionStatus
from schemas import ErrorReason
from settlement import fingerprint_of, requirements_digest


@pytest.fixture
def xdr():
    return envelope("settle")


@pytest.fixture
def ledger(xdr):
    return FakeLedgerClient(make_transaction(xdr))


@pytest.fixture
def store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def mechanism(ledger, store):
    return make_mechanism(ledger, store)


def test_fingerprint_is_sha256_of_envelope(xdr):
    import hashlib
    assert fingerprint_of(make_payload(xdr)) == hashlib.sha256(xdr.encode()).hexdigest()


def test_requirements_digest_tracks_every_field():
    assert requirements_digest(make_requirements()) == requirements_digest(make_requirements())
    assert requirements_digest(make_requirements()) != requirements_digest(
        make_requirements(resource="https://api.example.com/other")
    )


@pytest.mark.asyncio
async def test_settle_success_then_cached_replay(mechanism, ledger, store, xdr):
    payload, requirements = make_payload(xdr), make_requirements()

    first = await mechanism.settle(payload, requirements)
    second = await mechanism.settle(payload, requirements)

    assert first.success is True
    assert first.payer == PAYER
    assert first.transaction == xdr
    assert first.network == NETWORK
    assert second == first
    assert ledger.submit_calls == 1

    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.CONFIRMED
    assert record.tx_hash == make_transaction(xdr).hash


@pytest.mark.asyncio
async def test_concurrent_settles_submit_once(mechanism, ledger, xdr):
    ledger.submit_delay = 0.05
    payload, requirements = make_payload(xdr), make_requirements()

    results = await asyncio.gather(*(mechanism.settle(payload, requirements) for _ in range(5)))

    assert ledger.submit_calls == 1
    assert all(result == results[0] for result in results)
    assert results[0].success is True


@pytest.mark.asyncio
async def test_settle_of_invalid_payload_matches_verify(mechanism, ledger, store, xdr):
    payload = make_payload(xdr)
    requirements = make_requirements(maxAmountRequired="5000")

    verified = await mechanism.verify(payload, requirements)
    settled = await mechanism.settle(payload, requirements)

    assert verified.isValid is False
    assert settled.success is False
    assert settled.errorReason == verified.invalidReason == ErrorReason.INVALID_PAYMENT
    assert settled.transaction == ""
    assert ledger.submit_calls == 0
    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.REJECTED
    assert record.error_reason == ErrorReason.INVALID_PAYMENT


@pytest.mark.asyncio
async def test_rejection_is_terminal(mechanism, ledger, xdr):
    payload = make_payload(xdr)
    underpaid = make_requirements(maxAmountRequired="5000")

    rejected = await mechanism.settle(payload, underpaid)
    decodes = ledger.decode_calls
    repeated = await mechanism.settle(payload, underpaid)
    other = await mechanism.settle(payload, make_requirements())

    assert rejected.errorReason == ErrorReason.INVALID_PAYMENT
    assert repeated == rejected
    assert ledger.decode_calls == decodes
    assert other.success is False
    assert other.errorReason == ErrorReason.INVALID_TRANSACTION_STATE
    assert ledger.submit_calls == 0


@pytest.mark.asyncio
async def test_expired_payment_is_terminal(store, xdr):
    ledger = FakeLedgerClient(make_transaction(xdr, max_ledger=1000), sequence=1000)
    mechanism = make_mechanism(ledger, store)
    payload, requirements = make_payload(xdr), make_requirements()

    first = await mechanism.settle(payload, requirements)
    ledger.sequence = 1
    second = await mechanism.settle(payload, requirements)

    assert first.errorReason == second.errorReason == ErrorReason.PAYMENT_EXPIRED
    assert (await store.get(fingerprint_of(payload))).state == SettlementState.REJECTED


@pytest.mark.asyncio
async def test_wrong_version_never_reaches_ledger(mechanism, ledger, store, xdr):
    result = await mechanism.settle(make_payload(xdr, x402Version=2), make_requirements())
    assert result.errorReason == ErrorReason.INVALID_X402_VERSION
    assert ledger.io_calls == 0
    assert await store.get(fingerprint_of(make_payload(xdr))) is None


@pytest.mark.asyncio
async def test_protocol_field_failure_is_not_terminal(mechanism, ledger, xdr):
    wrong_scheme = await mechanism.settle(make_payload(xdr, scheme="upto"), make_requirements())
    accepted = await mechanism.settle(make_payload(xdr), make_requirements())

    assert wrong_scheme.errorReason == ErrorReason.UNSUPPORTED_SCHEME
    assert accepted.success is True
    assert ledger.submit_calls == 1


@pytest.mark.asyncio
async def test_ledger_rejection_is_cached(mechanism, ledger, store, xdr):
    ledger.submit_errors = [LedgerRejectedError("txBadSeq")]
    payload, requirements = make_payload(xdr), make_requirements()

    first = await mechanism.settle(payload, requirements)
    second = await mechanism.settle(payload, requirements)

    assert first.success is False
    assert first.errorReason == ErrorReason.INVALID_TRANSACTION
    assert first.transaction == xdr
    assert second == first
    assert ledger.submit_calls == 1
    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.FAILED


@pytest.mark.asyncio
async def test_transient_submission_errors_are_retried(mechanism, ledger, xdr):
    ledger.submit_errors = [LedgerTransientError("timeout"), LedgerTransientError("try again later")]
    result = await mechanism.settle(make_payload(xdr), make_requirements())
    assert result.success is True
    assert ledger.submit_calls == 3


@pytest.mark.asyncio
async def test_exhausted_retries_fail_submission(mechanism, ledger, xdr):
    ledger.submit_errors = [LedgerTransientError("rpc down")] * 1000
    result = await mechanism.settle(make_payload(xdr), make_requirements(maxTimeoutSeconds=1))
    assert result.success is False
    assert result.errorReason == ErrorReason.SUBMISSION_FAILED


@pytest.mark.asyncio
async def test_failed_inclusion(mechanism, ledger, xdr):
    ledger.status = TransactionStatus(InclusionState.FAILED, ledger=1001, result_code="txFAILED")
    result = await mechanism.settle(make_payload(xdr), make_requirements())
    assert result.success is False
    assert result.errorReason == ErrorReason.INVALID_TRANSACTION_STATE


@pytest.mark.asyncio
async def test_pending_status_is_polled(mechanism, ledger, xdr):
    ledger.statuses = [TransactionStatus(InclusionState.PENDING)] * 3
    result = await mechanism.settle(make_payload(xdr), make_requirements())
    assert result.success is True
    assert ledger.status_calls == 4


@pytest.mark.asyncio
async def test_unconfirmed_before_timeout(mechanism, ledger, store, xdr):
    ledger.status = TransactionStatus(InclusionState.PENDING)
    payload = make_payload(xdr)

    result = await mechanism.settle(payload, make_requirements(maxTimeoutSeconds=1))

    assert result.success is False
    assert result.errorReason == ErrorReason.INVALID_TRANSACTION_STATE
    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.FAILED
    assert ledger.submit_calls == 1


@pytest.mark.asyncio
async def test_cached_envelope_with_other_requirements(mechanism, ledger, store, xdr):
    payload = make_payload(xdr)
    await mechanism.settle(payload, make_requirements())

    replay = await mechanism.settle(payload, make_requirements(resource="https://api.example.com/other"))

    assert replay.success is False
    assert replay.errorReason == ErrorReason.INVALID_TRANSACTION_STATE
    assert ledger.submit_calls == 1
    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.CONFIRMED
    assert record.requirements_digest == requirements_digest(make_requirements())


@pytest.mark.asyncio
async def test_ledger_failure_during_verify_is_unexpected_settle_error(mechanism, ledger, store, xdr):
    ledger.transactions[xdr] = make_transaction(xdr, max_ledger=5000)
    ledger.state_errors = [LedgerTransientError("rpc down")] * 1000
    result = await mechanism.settle(make_payload(xdr), make_requirements(maxTimeoutSeconds=1))
    assert result.errorReason == ErrorReason.UNEXPECTED_SETTLE_ERROR
    assert ledger.submit_calls == 0
    assert await store.get(fingerprint_of(make_payload(xdr))) is None


@pytest.mark.asyncio
async def test_crash_after_submission_leaves_failed_record(mechanism, ledger, store, xdr):
    ledger.submit_errors = [RuntimeError("boom")]
    payload = make_payload(xdr)

    with pytest.raises(RuntimeError):
        await mechanism.settle(payload, make_requirements())

    record = await store.get(fingerprint_of(payload))
    assert record.state == SettlementState.FAILED
    assert record.error_reason == ErrorReason.INVALID_TRANSACTION_STATE


@pytest.mark.asyncio
async def test_waiter_gives_up_on_stuck_owner(mechanism, ledger, store, xdr):
    payload, requirements = make_payload(xdr), make_requirements(maxTimeoutSeconds=1)
    await store.acquire(fingerprint_of(payload), requirements_digest(requirements), NETWORK)

    result = await mechanism.settle(payload, requirements)

    assert result.success is False
    assert result.errorReason == ErrorReason.INVALID_TRANSACTION_STATE
    assert ledger.submit_calls == 0
