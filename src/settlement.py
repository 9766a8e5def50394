"""
Settlement coordination: verify, submit once per envelope, confirm.

State machine per fingerprint:

    RECEIVED -> REJECTED                  verification failed, nothing submitted
    RECEIVED -> SUBMITTING -> FAILED      ledger refused or transport gave up
    SUBMITTING -> SUBMITTED -> CONFIRMED  included and successful
    SUBMITTED -> FAILED                   included with a failure code, or never seen in time

Terminal records are cached in the idempotency store. Protocol-field and
unexpected verification failures are not terminal: the marker is released
so the fingerprint can be settled by a well-formed request.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from idempotency import IdempotencyStore, SettlementRecord, SettlementState
from ledger import (
    DecodedTransaction,
    InclusionState,
    LedgerClient,
    LedgerRejectedError,
    LedgerTransientError,
    TransactionStatus,
    call_with_retry,
)
from monitoring import record_submission
from schemas import ErrorReason, PaymentPayload, PaymentRequirements, SettleResponse
from verifier import PayloadVerifier, budget_seconds

logger = logging.getLogger(__name__)

# verification failures that end a fingerprint as REJECTED
CACHED_REJECTIONS = frozenset(
    {ErrorReason.INVALID_PAYLOAD, ErrorReason.INVALID_PAYMENT, ErrorReason.PAYMENT_EXPIRED}
)


def fingerprint_of(payload: PaymentPayload) -> str:
    """SHA-256 of the transaction envelope; the idempotency key."""
    return hashlib.sha256(payload.payload.invokeHostOpXDR.encode("utf-8")).hexdigest()


def requirements_digest(requirements: PaymentRequirements) -> str:
    canonical = json.dumps(
        requirements.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SettlementSettings:
    default_timeout: float = 60.0
    poll_interval: float = 1.0
    retry_initial_backoff: float = 0.25
    retry_max_backoff: float = 4.0


class SettlementCoordinator:
    """Submits verified payments to the ledger at most once per fingerprint."""

    def __init__(
        self,
        network: str,
        verifier: PayloadVerifier,
        ledger: LedgerClient,
        store: IdempotencyStore,
        settings: Optional[SettlementSettings] = None,
    ):
        self.network = network
        self._verifier = verifier
        self._ledger = ledger
        self._store = store
        self._settings = settings or SettlementSettings()

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        """
        Settle a payment.

        Concurrent calls for the same envelope share one submission: the first
        caller drives it, the others wait for its terminal record.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget_seconds(requirements, self._settings.default_timeout)
        fingerprint = fingerprint_of(payload)
        digest = requirements_digest(requirements)

        while True:
            claim = await self._store.acquire(fingerprint, digest, self.network)
            if claim.owner:
                return await self._drive(claim.record, payload, requirements, deadline)

            record = claim.record
            if not record.terminal:
                logger.info(f"Settlement in flight, waiting: fingerprint={fingerprint}")
                record = await self._store.wait_for(fingerprint, max(0.0, deadline - loop.time()))
                if record is None:
                    # the owner released it (request rejected before submission); settle it ourselves
                    if loop.time() >= deadline:
                        return self._failure(ErrorReason.INVALID_TRANSACTION_STATE, requirements)
                    continue
                if not record.terminal:
                    return self._failure(ErrorReason.INVALID_TRANSACTION_STATE, requirements)
            return self._replay(record, digest, requirements)

    def _replay(
        self, record: SettlementRecord, digest: str, requirements: PaymentRequirements
    ) -> SettleResponse:
        if record.requirements_digest != digest:
            logger.warning(
                f"Envelope already settled under different requirements: fingerprint={record.fingerprint}"
            )
            return self._failure(ErrorReason.INVALID_TRANSACTION_STATE, requirements)
        logger.info(f"Returning cached settlement: fingerprint={record.fingerprint} state={record.state.value}")
        return record.to_response()

    @staticmethod
    def _failure(reason: ErrorReason, requirements: PaymentRequirements, transaction: str = "") -> SettleResponse:
        return SettleResponse(
            success=False,
            errorReason=reason,
            transaction=transaction,
            network=requirements.network,
        )

    async def _drive(
        self,
        record: SettlementRecord,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        deadline: float,
    ) -> SettleResponse:
        finished = False
        submitted = False
        try:
            outcome = await self._verifier.check(payload, requirements, deadline)
            if not outcome.response.isValid:
                reason = outcome.response.invalidReason
                if reason in CACHED_REJECTIONS:
                    record = record.advance(SettlementState.REJECTED, error_reason=reason)
                    await self._store.complete(record)
                    finished = True
                    return record.to_response()
                await self._store.release(record.fingerprint)
                finished = True
                if reason == ErrorReason.UNEXPECTED_VERIFY_ERROR:
                    reason = ErrorReason.UNEXPECTED_SETTLE_ERROR
                return self._failure(reason, requirements)

            transaction = outcome.transaction
            if asyncio.get_running_loop().time() >= deadline:
                await self._store.release(record.fingerprint)
                finished = True
                return self._failure(ErrorReason.INVALID_TRANSACTION_STATE, requirements)

            record = record.advance(SettlementState.SUBMITTING, payer=outcome.response.payer)
            await self._store.update(record)
            submitted = True
            tx_hash, failure = await self._submit(transaction, deadline)
            if failure is not None:
                record = record.advance(
                    SettlementState.FAILED,
                    error_reason=failure,
                    transaction=transaction.envelope_xdr,
                )
            else:
                record = record.advance(
                    SettlementState.SUBMITTED,
                    tx_hash=tx_hash,
                    transaction=transaction.envelope_xdr,
                )
                await self._store.update(record)
                status = await self._await_inclusion(tx_hash, deadline)
                record = self._conclude(record, status)

            await self._store.complete(record)
            finished = True
            return record.to_response()
        finally:
            if not finished:
                if submitted:
                    await self._store.complete(
                        record.advance(
                            SettlementState.FAILED,
                            error_reason=ErrorReason.INVALID_TRANSACTION_STATE,
                        )
                    )
                else:
                    await self._store.release(record.fingerprint)

    async def _submit(
        self, transaction: DecodedTransaction, deadline: float
    ) -> tuple[Optional[str], Optional[ErrorReason]]:
        try:
            tx_hash = await call_with_retry(
                lambda: self._ledger.submit(transaction),
                deadline,
                initial_backoff=self._settings.retry_initial_backoff,
                max_backoff=self._settings.retry_max_backoff,
                description="transaction submission",
            )
        except LedgerRejectedError as e:
            logger.warning(f"Ledger rejected transaction {transaction.hash} on {self.network}: {e.code}")
            record_submission(self.network, "rejected")
            return None, ErrorReason.INVALID_TRANSACTION
        except (LedgerTransientError, asyncio.TimeoutError) as e:
            logger.error(f"Submission of {transaction.hash} on {self.network} failed: {e!r}")
            record_submission(self.network, "failed")
            return None, ErrorReason.SUBMISSION_FAILED
        record_submission(self.network, "accepted")
        logger.info(f"Transaction submitted on {self.network}: {tx_hash}")
        return tx_hash, None

    async def _await_inclusion(self, tx_hash: str, deadline: float) -> TransactionStatus:
        """Poll until the ledger reports a final status or the deadline passes."""
        loop = asyncio.get_running_loop()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return TransactionStatus(InclusionState.PENDING)
            try:
                status = await asyncio.wait_for(
                    self._ledger.get_transaction_status(tx_hash), timeout=remaining
                )
            except asyncio.TimeoutError:
                return TransactionStatus(InclusionState.PENDING)
            except LedgerTransientError as e:
                logger.warning(f"Status lookup for {tx_hash} failed, will poll again: {e}")
                status = TransactionStatus(InclusionState.PENDING)
            if status.state != InclusionState.PENDING:
                return status
            await asyncio.sleep(min(self._settings.poll_interval, max(0.0, deadline - loop.time())))

    def _conclude(self, record: SettlementRecord, status: TransactionStatus) -> SettlementRecord:
        if status.state == InclusionState.SUCCESS:
            logger.info(f"Transaction confirmed on {self.network}: {record.tx_hash} ledger={status.ledger}")
            return record.advance(SettlementState.CONFIRMED)
        if status.state == InclusionState.FAILED:
            logger.warning(
                f"Transaction {record.tx_hash} failed on {self.network}: {status.result_code}"
            )
        else:
            logger.warning(f"Transaction {record.tx_hash} not confirmed before timeout")
        return record.advance(
            SettlementState.FAILED,
            error_reason=ErrorReason.INVALID_TRANSACTION_STATE,
        )
