from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class IdentityField(str, Enum):
    IP_ADDRESS = "ipAddress"
    BROWSER_ID = "browserId"


class Coupon(BaseModel):
    id: int
    code: str

    # Audit fields, stamped on every claim
    isAssigned: bool = False
    assignedAt: Optional[datetime] = None
    assignedTo: Optional[str] = None


class Claim(BaseModel):
    id: Optional[int] = None
    ipAddress: str
    browserId: Optional[str] = None
    couponId: int
    claimedAt: datetime


class EligibilityStatus(BaseModel):
    eligible: bool
    minutesRemaining: Optional[int] = None


class ClaimResult(BaseModel):
    code: str
    message: str


# ---------------------------
# API payloads
# ---------------------------

class ClaimRequest(BaseModel):
    browserId: Optional[str] = None


class CouponCode(BaseModel):
    code: str


class ClaimResponse(BaseModel):
    success: bool
    message: str
    coupon: CouponCode
