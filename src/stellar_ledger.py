"""
Stellar implementation of LedgerClient backed by stellar-sdk and Soroban RPC.
"""

import logging
from decimal import Decimal
from typing import Awaitable, Optional, TypeVar

from stellar_sdk import (
    Address,
    InvokeHostFunction,
    Keypair,
    Payment,
    SorobanServerAsync,
    StrKey,
    TransactionEnvelope,
    scval,
    xdr,
)
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.exceptions import (
    BadSignatureError,
    ConnectionError as StellarConnectionError,
    SorobanRpcErrorResponse,
)
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from helper import get_network_passphrase
from ledger import (
    DecodedTransaction,
    EnvelopeSignature,
    InclusionState,
    LedgerClient,
    LedgerDecodeError,
    LedgerRejectedError,
    LedgerState,
    LedgerTransientError,
    TransactionStatus,
    Transfer,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STROOPS_PER_UNIT = 10_000_000
TRANSFER_FUNCTION = b"transfer"


def _verifies(keypair: Keypair, data: bytes, signature: bytes) -> bool:
    try:
        keypair.verify(data, signature)
        return True
    except BadSignatureError:
        return False


class StellarLedgerClient(LedgerClient):
    """
    Soroban RPC facade for one Stellar network.

    Decoding and signature checks are local; ledger state, submission and
    status lookups go through SorobanServerAsync.
    """

    def __init__(
        self,
        network: str,
        rpc_url: str,
        network_passphrase: Optional[str] = None,
        request_timeout: float = 10.0,
        server: Optional[SorobanServerAsync] = None,
    ):
        self.network = network
        self.network_passphrase = network_passphrase or get_network_passphrase(network)
        if server is None:
            server = SorobanServerAsync(
                rpc_url, client=AiohttpClient(request_timeout=request_timeout)
            )
        self._server = server

    def decode(self, envelope_xdr: str, network_passphrase: str) -> DecodedTransaction:
        try:
            envelope = TransactionEnvelope.from_xdr(envelope_xdr, network_passphrase)
        except Exception as e:
            raise LedgerDecodeError(f"Cannot decode transaction envelope: {e}") from e

        tx = envelope.transaction
        source = tx.source.account_id
        signers = [source]
        transfers = []
        for op in tx.operations:
            op_source = op.source.account_id if op.source is not None else source
            transfer = self._transfer_from_operation(op, op_source, network_passphrase)
            if transfer is not None:
                transfers.append(transfer)
                if StrKey.is_valid_ed25519_public_key(transfer.source):
                    signers.append(transfer.source)
            signers.append(op_source)

        max_ledger = None
        max_time = None
        preconditions = tx.preconditions
        if preconditions is not None:
            if preconditions.ledger_bounds is not None and preconditions.ledger_bounds.max_ledger:
                max_ledger = preconditions.ledger_bounds.max_ledger
            if preconditions.time_bounds is not None and preconditions.time_bounds.max_time:
                max_time = preconditions.time_bounds.max_time

        return DecodedTransaction(
            hash=envelope.hash_hex(),
            source_account=source,
            envelope_xdr=envelope_xdr,
            signatures=tuple(
                EnvelopeSignature(hint=s.signature_hint, signature=s.signature)
                for s in envelope.signatures
            ),
            signers=tuple(dict.fromkeys(signers)),
            transfers=tuple(transfers),
            max_ledger=max_ledger,
            max_time=max_time,
            raw=envelope,
        )

    def _transfer_from_operation(self, op, op_source: str, network_passphrase: str) -> Optional[Transfer]:
        if isinstance(op, Payment):
            if op.asset.is_native():
                return None
            # code and issuer together, as the Stellar Asset Contract address
            return Transfer(
                asset=op.asset.contract_id(network_passphrase),
                source=op_source,
                destination=op.destination.account_id,
                amount=int(Decimal(op.amount) * STROOPS_PER_UNIT),
            )
        if isinstance(op, InvokeHostFunction):
            return self._transfer_from_invocation(op.host_function)
        return None

    @staticmethod
    def _transfer_from_invocation(host_function: xdr.HostFunction) -> Optional[Transfer]:
        """Token contract call `transfer(from, to, amount)`"""
        if host_function.type != xdr.HostFunctionType.HOST_FUNCTION_TYPE_INVOKE_CONTRACT:
            return None
        invocation = host_function.invoke_contract
        if invocation.function_name.sc_symbol != TRANSFER_FUNCTION or len(invocation.args) != 3:
            return None
        try:
            source = scval.from_address(invocation.args[0]).address
            destination = scval.from_address(invocation.args[1]).address
            amount = scval.from_int128(invocation.args[2])
        except ValueError:
            return None
        return Transfer(
            asset=Address.from_xdr_sc_address(invocation.contract_address).address,
            source=source,
            destination=destination,
            amount=amount,
        )

    async def verify_signatures(
        self, transaction: DecodedTransaction, authorization_signature: str
    ) -> bool:
        if not transaction.signatures:
            return False
        try:
            data = bytes.fromhex(transaction.hash)
            authorization = bytes.fromhex(authorization_signature)
            keypairs = [
                Keypair.from_public_key(signer)
                for signer in transaction.signers
                if StrKey.is_valid_ed25519_public_key(signer)
            ]
        except ValueError:
            return False

        for decorated in transaction.signatures:
            candidates = [kp for kp in keypairs if kp.signature_hint() == decorated.hint]
            if not any(_verifies(kp, data, decorated.signature) for kp in candidates):
                logger.info(f"Envelope signature does not match any signer: tx={transaction.hash}")
                return False
        return any(_verifies(kp, data, authorization) for kp in keypairs)

    async def _rpc(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (StellarConnectionError, SorobanRpcErrorResponse) as e:
            raise LedgerTransientError(f"Soroban RPC failure on {self.network}: {e}") from e

    async def current_ledger_state(self) -> LedgerState:
        response = await self._rpc(self._server.get_latest_ledger())
        return LedgerState(sequence=response.sequence)

    async def submit(self, transaction: DecodedTransaction) -> str:
        response = await self._rpc(self._server.send_transaction(transaction.envelope_xdr))
        if response.status == SendTransactionStatus.ERROR:
            raise LedgerRejectedError(self._result_code(response.error_result_xdr))
        if response.status == SendTransactionStatus.TRY_AGAIN_LATER:
            raise LedgerTransientError(f"{self.network} asked to try again later")
        # PENDING and DUPLICATE both mean the ledger holds the transaction
        return response.hash

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        response = await self._rpc(self._server.get_transaction(tx_hash))
        if response.status == GetTransactionStatus.SUCCESS:
            return TransactionStatus(InclusionState.SUCCESS, ledger=response.ledger)
        if response.status == GetTransactionStatus.FAILED:
            return TransactionStatus(
                InclusionState.FAILED,
                ledger=response.ledger,
                result_code=self._result_code(response.result_xdr),
            )
        return TransactionStatus(InclusionState.PENDING)

    @staticmethod
    def _result_code(result_xdr: Optional[str]) -> str:
        if not result_xdr:
            return "unknown"
        try:
            return xdr.TransactionResult.from_xdr(result_xdr).result.code.name
        except Exception:
            logger.debug("Unparseable transaction result: %s", result_xdr)
            return "unknown"

    async def close(self) -> None:
        await self._server.close()
