"""
Request/response models for the facilitator API.

Fields are typed loosely: only the JSON shape is enforced here,
protocol rules (supported networks, amounts, addresses) are checked by
validation.py so they can be reported with a specific ErrorReason.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorReason(str, Enum):
    """Closed set of reasons reported in invalidReason / errorReason"""
    INVALID_NETWORK = "invalid_network"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_PAYMENT_REQUIREMENTS = "invalid_payment_requirements"
    INVALID_SCHEME = "invalid_scheme"
    INVALID_PAYMENT = "invalid_payment"
    PAYMENT_EXPIRED = "payment_expired"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    INVALID_X402_VERSION = "invalid_x402_version"
    INVALID_TRANSACTION_STATE = "invalid_transaction_state"
    UNEXPECTED_VERIFY_ERROR = "unexpected_verify_error"
    UNEXPECTED_SETTLE_ERROR = "unexpected_settle_error"
    INVALID_TRANSACTION = "invalid_transaction"
    SUBMISSION_FAILED = "submission_failed"
    UNEXPECTED_ERROR = "unexpected_error"


class PaymentRequirementsExtra(BaseModel):
    """Stellar specific requirement fields"""
    model_config = ConfigDict(frozen=True)

    transactionSourceAccount: Optional[str] = None
    networkPassphrase: Optional[str] = None
    muxAccountId: Optional[str] = None
    maxLedger: Optional[int] = None
    canSponsor: Optional[bool] = None


class PaymentRequirements(BaseModel):
    """Payment requirements declared by the resource server"""
    model_config = ConfigDict(frozen=True)

    scheme: str
    network: str
    resource: str
    description: str = ""
    mimeType: str = ""
    maxTimeoutSeconds: int
    maxAmountRequired: str
    payTo: str
    asset: str
    extra: Optional[PaymentRequirementsExtra] = None


class ExactStellarAuthorization(BaseModel):
    """Signed authorization carried in the X-PAYMENT payload"""
    model_config = ConfigDict(frozen=True)

    signature: str
    invokeHostOpXDR: str


class PaymentPayload(BaseModel):
    """Payment payload presented by the paying client"""
    model_config = ConfigDict(frozen=True)

    x402Version: int
    scheme: str
    network: str
    payload: ExactStellarAuthorization


class VerifyRequest(BaseModel):
    """Verify request model"""
    paymentPayload: PaymentPayload
    paymentRequirements: PaymentRequirements


class SettleRequest(BaseModel):
    """Settle request model"""
    paymentPayload: PaymentPayload
    paymentRequirements: PaymentRequirements


class VerifyResponse(BaseModel):
    isValid: bool
    invalidReason: Optional[ErrorReason] = None
    payer: Optional[str] = None


class SettleResponse(BaseModel):
    success: bool
    errorReason: Optional[ErrorReason] = None
    payer: Optional[str] = None
    transaction: str = ""
    network: str


class SupportedKind(BaseModel):
    x402Version: int
    scheme: str
    network: str
    extra: Optional[dict[str, Any]] = None


class SupportedResponse(BaseModel):
    kinds: list[SupportedKind]


class SettlementRecordResponse(BaseModel):
    """Idempotency record exposed by GET /settlements/{fingerprint}"""
    model_config = ConfigDict(populate_by_name=True)

    fingerprint: str
    state: str
    network: str
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    transaction: str = ""
    payer: Optional[str] = None
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
