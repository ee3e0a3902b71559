"""
Pydantic models for API requests and responses.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Payments
# ============================================================================

class CreatePaymentRequest(BaseModel):
    """Request for a new receiving address."""

    amount: Decimal = Field(..., gt=0, description="Requested amount in coin units")
    expires_in: Optional[int] = Field(
        None, gt=0, description="Seconds until the payment expires (default: server setting)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"amount": "0.01", "expires_in": 3600}]
        }
    }


class PaymentResponse(BaseModel):
    """A payment record (no key material)."""

    id: str
    address: str
    amount: float = Field(..., description="Requested amount in coin units")
    status: str = Field(..., description="pending, completed or expired")
    created_at: int
    updated_at: int
    expires_at: int = Field(..., description="Unix deadline, 0 = never")


class PaymentStatusResponse(PaymentResponse):
    """A payment record plus live chain state."""

    confirmations: int
    confirmations_needed: int
    received: float = Field(..., description="Confirmed + unconfirmed, in coin units")


# ============================================================================
# Health
# ============================================================================

class HealthResponse(BaseModel):
    """Service health."""

    status: str
    version: str
    electrum: bool
    sweeper_running: bool
    sweeper_cycles: int
    sweeps_completed: int
    sweeps_failed: int
