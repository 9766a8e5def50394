"""
Field-level validation for payment requirements and payloads.

Each check returns the specific ErrorReason it is responsible for, or None.
validate_requirements composes them in a fixed order and stops at the first
failure.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from stellar_sdk import StrKey

from helper import (
    SUPPORTED_SCHEMES,
    get_network_passphrase,
    is_stellar_network,
    is_supported_network,
)
from schemas import ErrorReason, PaymentPayload, PaymentRequirements

HEX_SIGNATURE_RE = re.compile(r"^[0-9a-fA-F]{128}$")
BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
AMOUNT_RE = re.compile(r"^[0-9]+$")


def is_valid_address(value: str, network: str) -> bool:
    """True if value is a Stellar account (G...) or contract (C...) address."""
    if not isinstance(value, str) or not is_stellar_network(network):
        return False
    return StrKey.is_valid_ed25519_public_key(value) or StrKey.is_valid_contract(value)


def is_valid_amount(value: str) -> bool:
    return isinstance(value, str) and AMOUNT_RE.match(value) is not None


def is_valid_signature(value: str) -> bool:
    return HEX_SIGNATURE_RE.match(value) is not None


def is_valid_envelope(value: str) -> bool:
    # standard base64 with padding, so the length is always a multiple of 4
    return bool(value) and len(value) % 4 == 0 and BASE64_RE.match(value) is not None


def check_network(requirements: PaymentRequirements) -> Optional[ErrorReason]:
    if not is_supported_network(requirements.network):
        return ErrorReason.INVALID_NETWORK
    return None


def check_scheme(requirements: PaymentRequirements) -> Optional[ErrorReason]:
    if requirements.scheme not in SUPPORTED_SCHEMES:
        return ErrorReason.UNSUPPORTED_SCHEME
    return None


def check_amount_and_bounds(requirements: PaymentRequirements) -> Optional[ErrorReason]:
    if not is_valid_amount(requirements.maxAmountRequired):
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    if requirements.maxTimeoutSeconds < 0:
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    parsed = urlparse(requirements.resource)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    return None


def check_addresses(requirements: PaymentRequirements) -> Optional[ErrorReason]:
    network = requirements.network
    if not is_valid_address(requirements.payTo, network):
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    if not is_valid_address(requirements.asset, network):
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS

    extra = requirements.extra
    if extra is None:
        return None
    if extra.transactionSourceAccount is not None and not is_valid_address(
        extra.transactionSourceAccount, network
    ):
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    # accepted either as the literal passphrase or as the network id itself
    if extra.networkPassphrase is not None and extra.networkPassphrase not in (
        network,
        get_network_passphrase(network),
    ):
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    if extra.maxLedger is not None and extra.maxLedger < 0:
        return ErrorReason.INVALID_PAYMENT_REQUIREMENTS
    return None


def validate_requirements(requirements: PaymentRequirements) -> Optional[ErrorReason]:
    """
    Check payment requirements for internal consistency.

    Order: network, scheme, amount/timeout/resource, addresses.

    Returns:
        The first failing ErrorReason, or None when the requirements are usable.
    """
    reason = check_network(requirements)
    if reason is not None:
        return reason
    reason = check_scheme(requirements)
    if reason is not None:
        return reason
    reason = check_amount_and_bounds(requirements)
    if reason is not None:
        return reason
    return check_addresses(requirements)


def check_payload_shape(payload: PaymentPayload) -> Optional[ErrorReason]:
    authorization = payload.payload
    if not is_valid_signature(authorization.signature):
        return ErrorReason.INVALID_PAYLOAD
    if not is_valid_envelope(authorization.invokeHostOpXDR):
        return ErrorReason.INVALID_PAYLOAD
    return None
