"""
Exact scheme mechanism for one Stellar network
"""

from typing import Any, Optional

from helper import SCHEME_EXACT
from idempotency import IdempotencyStore
from ledger import LedgerClient
from schemas import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse
from settlement import SettlementCoordinator, SettlementSettings
from verifier import PayloadVerifier


class ExactStellarMechanism:
    """Binds a verifier and a settlement coordinator to a network's ledger client."""

    def __init__(
        self,
        network: str,
        network_passphrase: str,
        ledger: LedgerClient,
        store: IdempotencyStore,
        settings: Optional[SettlementSettings] = None,
    ):
        settings = settings or SettlementSettings()
        self.network = network
        self.network_passphrase = network_passphrase
        self.ledger = ledger
        self.verifier = PayloadVerifier(
            network,
            network_passphrase,
            ledger,
            default_timeout=settings.default_timeout,
            retry_initial_backoff=settings.retry_initial_backoff,
            retry_max_backoff=settings.retry_max_backoff,
        )
        self.coordinator = SettlementCoordinator(network, self.verifier, ledger, store, settings)

    def scheme(self) -> str:
        return SCHEME_EXACT

    def extra(self) -> dict[str, Any]:
        """Advertised in /supported so clients can build envelopes for this network"""
        return {"networkPassphrase": self.network_passphrase}

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        return await self.verifier.verify(payload, requirements)

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        return await self.coordinator.settle(payload, requirements)

    async def close(self) -> None:
        await self.ledger.close()
