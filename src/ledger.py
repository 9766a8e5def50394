"""
Ledger capability interface used by the verifier and the settlement coordinator.

The engine only ever talks to the ledger through LedgerClient, so tests can
swap in a deterministic fake and the Stellar RPC details stay in
stellar_ledger.py.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerError(Exception):
    """Base class for ledger interaction failures"""


class LedgerDecodeError(LedgerError):
    """Envelope could not be decoded for the given network"""


class LedgerTransientError(LedgerError):
    """Network failure, RPC error or try-again-later; safe to retry"""


class LedgerRejectedError(LedgerError):
    """Ledger refused the transaction; never retried"""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


class InclusionState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class EnvelopeSignature:
    hint: bytes
    signature: bytes


@dataclass(frozen=True)
class Transfer:
    """A movement of `amount` base units of `asset` from `source` to `destination`"""
    asset: str
    source: str
    destination: str
    amount: int


@dataclass(frozen=True)
class DecodedTransaction:
    """Network-neutral view of a decoded transaction envelope"""
    hash: str
    source_account: str
    envelope_xdr: str
    signatures: tuple[EnvelopeSignature, ...] = ()
    signers: tuple[str, ...] = ()
    transfers: tuple[Transfer, ...] = ()
    max_ledger: Optional[int] = None
    max_time: Optional[int] = None
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class LedgerState:
    sequence: int


@dataclass(frozen=True)
class TransactionStatus:
    state: InclusionState
    ledger: Optional[int] = None
    result_code: Optional[str] = None


class LedgerClient(ABC):
    """Network-specific ledger facade"""

    @abstractmethod
    def decode(self, envelope_xdr: str, network_passphrase: str) -> DecodedTransaction:
        """
        Decode a base64 transaction envelope.

        Raises:
            LedgerDecodeError: If the envelope is not a valid transaction for the network.
        """

    @abstractmethod
    async def verify_signatures(
        self, transaction: DecodedTransaction, authorization_signature: str
    ) -> bool:
        """Check the envelope signatures and the hex authorization signature over the transaction hash"""

    @abstractmethod
    async def current_ledger_state(self) -> LedgerState:
        """Latest closed ledger"""

    @abstractmethod
    async def submit(self, transaction: DecodedTransaction) -> str:
        """
        Submit the transaction.

        Returns:
            Transaction hash accepted by the ledger.

        Raises:
            LedgerTransientError: Submission may be retried.
            LedgerRejectedError: The ledger refused the transaction.
        """

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        """Inclusion state of a submitted transaction"""

    async def close(self) -> None:
        """Release network resources"""


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    deadline: float,
    *,
    initial_backoff: float = 0.25,
    max_backoff: float = 4.0,
    description: str = "ledger call",
) -> T:
    """
    Run `call` until it succeeds, retrying LedgerTransientError with
    exponential backoff. Each attempt and each sleep is bounded by `deadline`
    (an event loop timestamp).

    Raises:
        asyncio.TimeoutError: The deadline passed before a successful attempt.
        LedgerTransientError: The last attempt failed and no budget is left to retry.
        LedgerRejectedError: Propagated immediately.
    """
    loop = asyncio.get_running_loop()
    backoff = initial_backoff
    attempt = 0
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise asyncio.TimeoutError(f"{description} timed out")
        attempt += 1
        try:
            return await asyncio.wait_for(call(), timeout=remaining)
        except LedgerTransientError as e:
            remaining = deadline - loop.time()
            if remaining <= backoff:
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}), retrying in {backoff:.2f}s: {e}"
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, max_backoff)
