"""
Payment payload verification for the exact scheme on Stellar.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from helper import SCHEME_EXACT, X402_VERSION
from ledger import DecodedTransaction, LedgerClient, LedgerDecodeError, LedgerError, call_with_retry
from schemas import ErrorReason, PaymentPayload, PaymentRequirements, VerifyResponse
from validation import check_payload_shape, validate_requirements

logger = logging.getLogger(__name__)


def budget_seconds(requirements: PaymentRequirements, default_timeout: float) -> float:
    """Time allowed for ledger interaction; maxTimeoutSeconds of 0 means the configured default."""
    if requirements.maxTimeoutSeconds > 0:
        return float(requirements.maxTimeoutSeconds)
    return default_timeout


@dataclass(frozen=True)
class VerificationOutcome:
    response: VerifyResponse
    transaction: Optional[DecodedTransaction] = None

    @classmethod
    def rejected(cls, reason: ErrorReason) -> "VerificationOutcome":
        return cls(VerifyResponse(isValid=False, invalidReason=reason))


class PayloadVerifier:
    """
    Checks a payment payload against its requirements.

    The gates run in a fixed order and the first failure is returned.
    Everything up to decoding is local; signature, ledger-state and
    payment checks go through the LedgerClient.
    """

    def __init__(
        self,
        network: str,
        network_passphrase: str,
        ledger: LedgerClient,
        *,
        default_timeout: float = 60.0,
        retry_initial_backoff: float = 0.25,
        retry_max_backoff: float = 4.0,
        clock: Callable[[], float] = time.time,
    ):
        self.network = network
        self.network_passphrase = network_passphrase
        self._ledger = ledger
        self._default_timeout = default_timeout
        self._retry_initial_backoff = retry_initial_backoff
        self._retry_max_backoff = retry_max_backoff
        self._clock = clock

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        outcome = await self.check(payload, requirements)
        return outcome.response

    async def check(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        deadline: Optional[float] = None,
    ) -> VerificationOutcome:
        """
        Run every verification gate.

        Args:
            payload: Payment payload from client
            requirements: Payment requirements
            deadline: Event loop time bounding ledger calls; derived from
                maxTimeoutSeconds when omitted

        Returns:
            VerificationOutcome carrying the decoded transaction when valid
        """
        reason = self._check_protocol_fields(payload, requirements)
        if reason is not None:
            return self._reject(reason, requirements)

        try:
            transaction = self._ledger.decode(payload.payload.invokeHostOpXDR, self.network_passphrase)
        except LedgerDecodeError as e:
            logger.info(f"Undecodable envelope on {self.network}: {e}")
            return self._reject(ErrorReason.INVALID_PAYLOAD, requirements)

        if deadline is None:
            deadline = asyncio.get_running_loop().time() + budget_seconds(
                requirements, self._default_timeout
            )

        try:
            reason = await self._check_signatures(transaction, payload.payload.signature, deadline)
            if reason is None:
                reason = await self._check_validity_window(transaction, requirements, deadline)
        except (LedgerError, asyncio.TimeoutError) as e:
            logger.warning(f"Ledger interaction failed during verify on {self.network}: {e!r}")
            return self._reject(ErrorReason.UNEXPECTED_VERIFY_ERROR, requirements)
        if reason is not None:
            return self._reject(reason, requirements)

        payer, reason = self._match_payment(transaction, requirements)
        if reason is not None:
            return self._reject(reason, requirements)

        return VerificationOutcome(VerifyResponse(isValid=True, payer=payer), transaction)

    def _reject(self, reason: ErrorReason, requirements: PaymentRequirements) -> VerificationOutcome:
        logger.info(f"Payment rejected: network={requirements.network} reason={reason.value}")
        return VerificationOutcome.rejected(reason)

    def _check_protocol_fields(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> Optional[ErrorReason]:
        reason = validate_requirements(requirements)
        if reason is not None:
            return reason
        if payload.x402Version != X402_VERSION:
            return ErrorReason.INVALID_X402_VERSION
        if payload.scheme != requirements.scheme or payload.scheme != SCHEME_EXACT:
            return ErrorReason.UNSUPPORTED_SCHEME
        if payload.network != requirements.network:
            return ErrorReason.INVALID_NETWORK
        if requirements.network != self.network:
            return ErrorReason.INVALID_NETWORK
        return check_payload_shape(payload)

    async def _check_signatures(
        self, transaction: DecodedTransaction, authorization_signature: str, deadline: float
    ) -> Optional[ErrorReason]:
        if not transaction.signatures:
            return ErrorReason.INVALID_PAYMENT
        valid = await call_with_retry(
            lambda: self._ledger.verify_signatures(transaction, authorization_signature),
            deadline,
            initial_backoff=self._retry_initial_backoff,
            max_backoff=self._retry_max_backoff,
            description="signature verification",
        )
        if not valid:
            return ErrorReason.INVALID_PAYMENT
        return None

    async def _check_validity_window(
        self,
        transaction: DecodedTransaction,
        requirements: PaymentRequirements,
        deadline: float,
    ) -> Optional[ErrorReason]:
        if transaction.max_time is not None and transaction.max_time < self._clock():
            return ErrorReason.PAYMENT_EXPIRED

        max_ledger = requirements.extra.maxLedger if requirements.extra else None
        if max_ledger is None and transaction.max_ledger is None:
            return None

        state = await call_with_retry(
            self._ledger.current_ledger_state,
            deadline,
            initial_backoff=self._retry_initial_backoff,
            max_backoff=self._retry_max_backoff,
            description="ledger state lookup",
        )
        if max_ledger is not None and state.sequence > max_ledger:
            return ErrorReason.PAYMENT_EXPIRED
        # the transaction's own upper bound is exclusive
        if transaction.max_ledger is not None and state.sequence >= transaction.max_ledger:
            return ErrorReason.PAYMENT_EXPIRED
        return None

    @staticmethod
    def _match_payment(
        transaction: DecodedTransaction, requirements: PaymentRequirements
    ) -> tuple[Optional[str], Optional[ErrorReason]]:
        extra = requirements.extra
        if (
            extra is not None
            and extra.transactionSourceAccount is not None
            and transaction.source_account != extra.transactionSourceAccount
        ):
            return None, ErrorReason.INVALID_PAYMENT

        required = int(requirements.maxAmountRequired)
        for transfer in transaction.transfers:
            if transfer.asset != requirements.asset or transfer.destination != requirements.payTo:
                continue
            if transfer.amount < required:
                continue
            if transfer.source == requirements.payTo:
                # paying yourself is not a payment
                continue
            return transfer.source, None
        return None, ErrorReason.INVALID_PAYMENT
