"""
Pydantic Models for MongoDB Collections
Document shapes for users, anonymous usage, the spending ledger and payments
"""
from pydantic import BaseModel, Field, StrictBool, StrictInt
from typing import Optional
from datetime import datetime
from enum import Enum


class SpendingAction(str, Enum):
    """Every reason a token balance can change"""
    TOKEN_PURCHASE = "token_purchase"
    FREE_TOKENS_GRANTED = "free_tokens_granted"
    ANONYMOUS_TOKENS_TRANSFERRED = "anonymous_tokens_transferred"
    ADMIN_TOKEN_GRANT = "admin_token_grant"
    ADMIN_TOKEN_DEDUCTION = "admin_token_deduction"
    PAYMENT_FAILURE_COMPENSATION = "payment_failure_compensation"
    TRANSCRIPTION_CREATION = "transcription_creation"
    NOTES_GENERATION = "notes_generation"
    PRD_GENERATION = "prd_generation"


class PaymentStatus(str, Enum):
    """Payment record lifecycle"""
    PENDING = "pending"
    COMPLETED = "completed"


class TranscriptionStatus(str, Enum):
    """Transcription pipeline states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class AnonymousUserModel(BaseModel):
    """Free-tier usage record keyed by request fingerprint"""
    fingerprint: str = Field(..., min_length=1)
    ip: str = "unknown"
    userAgent: str = "unknown"
    transcriptionCount: int = Field(default=0, ge=0)
    isTransferUsed: bool = False
    transferredToUserId: Optional[str] = None
    transferredAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)


class SpendingHistoryEntry(BaseModel):
    """Append-only ledger row; balanceAfter is the balance right after the change"""
    userId: str
    action: SpendingAction
    tokensChanged: int
    description: str
    balanceAfter: int
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    transcriptionId: Optional[str] = None
    transcriptionTitle: Optional[str] = None
    isFreeTier: Optional[bool] = None
    paymentSessionId: Optional[str] = None

    class Config:
        use_enum_values = True

    def to_document(self) -> dict:
        """Mongo document without unset optional fields"""
        return self.model_dump(exclude_none=True)


class PaymentModel(BaseModel):
    """One Stripe checkout session, unique by stripeSessionId"""
    userId: str
    stripeSessionId: str
    stripePaymentIntentId: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    tokensAdded: int
    status: PaymentStatus = PaymentStatus.PENDING
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


class AdminUserUpdate(BaseModel):
    """PATCH body for admin user edits; any subset may be present"""
    tokens: Optional[StrictInt] = Field(default=None, ge=0)
    isActive: Optional[StrictBool] = None
    isAdmin: Optional[StrictBool] = None


class PaymentFailureCompensation(BaseModel):
    """Manual token grant for a payment that failed to credit"""
    userId: str
    tokensToGrant: StrictInt = Field(..., gt=0)
    reason: Optional[str] = None
    stripeSessionId: Optional[str] = None


class ImpersonationRequest(BaseModel):
    """Admin request to act as another user"""
    userId: str
