"""
X402Facilitator - routes verify/settle calls to the mechanism registered for
the requirements' network and scheme.
"""

import logging
from typing import Any, Optional, Protocol

from helper import X402_VERSION
from idempotency import IdempotencyStore, InMemoryIdempotencyStore, SettlementRecord
from monitoring import record_settle, record_verify
from schemas import (
    ErrorReason,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyResponse,
)
from validation import validate_requirements

logger = logging.getLogger(__name__)


class FacilitatorMechanism(Protocol):
    """Facilitator mechanism interface"""

    def scheme(self) -> str:
        ...

    def extra(self) -> dict[str, Any]:
        ...

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        ...

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        ...

    async def close(self) -> None:
        ...


class X402Facilitator:
    """
    Core payment processor for the x402 protocol.

    Holds the idempotency store shared by every registered mechanism.
    """

    def __init__(self, store: Optional[IdempotencyStore] = None) -> None:
        self.store: IdempotencyStore = store or InMemoryIdempotencyStore()
        self._mechanisms: dict[str, dict[str, FacilitatorMechanism]] = {}

    def register(self, networks: list[str], mechanism: FacilitatorMechanism) -> "X402Facilitator":
        """
        Register a payment mechanism for multiple networks.

        Returns:
            self for method chaining
        """
        scheme = mechanism.scheme()
        for network in networks:
            self._mechanisms.setdefault(network, {})[scheme] = mechanism
        return self

    def supported(self) -> SupportedResponse:
        """Every (scheme, network) pair this facilitator accepts"""
        kinds = [
            SupportedKind(
                x402Version=X402_VERSION,
                scheme=scheme,
                network=network,
                extra=mechanism.extra() or None,
            )
            for network, schemes in self._mechanisms.items()
            for scheme, mechanism in schemes.items()
        ]
        return SupportedResponse(kinds=kinds)

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        mechanism = self._find_mechanism(requirements.network, requirements.scheme)
        if mechanism is None:
            result = VerifyResponse(isValid=False, invalidReason=self._unroutable_reason(requirements))
        else:
            result = await mechanism.verify(payload, requirements)
        record_verify(requirements.network, result)
        return result

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        mechanism = self._find_mechanism(requirements.network, requirements.scheme)
        if mechanism is None:
            result = SettleResponse(
                success=False,
                errorReason=self._unroutable_reason(requirements),
                transaction="",
                network=requirements.network,
            )
        else:
            result = await mechanism.settle(payload, requirements)
        record_settle(requirements.network, result)
        return result

    async def get_settlement(self, fingerprint: str) -> Optional[SettlementRecord]:
        return await self.store.get(fingerprint)

    async def close(self) -> None:
        closed = set()
        for schemes in self._mechanisms.values():
            for mechanism in schemes.values():
                if id(mechanism) in closed:
                    continue
                closed.add(id(mechanism))
                await mechanism.close()
        self._mechanisms.clear()
        await self.store.close()

    @staticmethod
    def _unroutable_reason(requirements: PaymentRequirements) -> ErrorReason:
        # report the requirement problem if there is one, else the network is simply not configured
        reason = validate_requirements(requirements)
        if reason is None:
            logger.info(f"No mechanism registered for {requirements.network}/{requirements.scheme}")
            return ErrorReason.INVALID_NETWORK
        return reason

    def _find_mechanism(self, network: str, scheme: str) -> Optional[FacilitatorMechanism]:
        network_mechanisms = self._mechanisms.get(network)
        if network_mechanisms is None:
            return None
        return network_mechanisms.get(scheme)
