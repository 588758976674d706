from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

from enhancer.services.enhancement import EnhanceRequest

Mode = Literal["basic", "ai"]
Model = Literal["gfpgan"]


class EnhanceBody(BaseModel):
    mode: Mode = "basic"
    image: str = Field(min_length=1)  # original, as a data URL
    filtered: Optional[str] = None  # client-rendered filter output (basic mode)
    promptLabel: Optional[str] = Field(default=None, max_length=200)
    model: Model = "gfpgan"

    def to_request(self) -> EnhanceRequest:
        return EnhanceRequest(
            mode=self.mode,
            image=self.image,
            filtered=self.filtered,
            prompt_label=self.promptLabel,
            model=self.model,
        )


class GuestEnhanceBody(EnhanceBody):
    mode: Mode = "ai"
    sessionId: str = Field(min_length=8, max_length=128)
    usedCount: int = Field(default=0, ge=0)  # client-held counter


class GuestStageBody(BaseModel):
    sessionId: str = Field(min_length=8, max_length=128)
    request: Optional[EnhanceBody] = None
    # plan picked before sign-up; priceId defaults to the tier's current price
    checkoutTier: Optional[str] = None
    checkoutPriceId: Optional[str] = None


class GuestClaimBody(BaseModel):
    sessionId: str = Field(min_length=8, max_length=128)
    usedCount: int = Field(default=0, ge=0)


class CheckoutBody(BaseModel):
    tier: str
    priceId: str


class PlanChangeBody(BaseModel):
    tier: str
    priceId: str


class ProfileResponse(BaseModel):
    profile: Dict[str, Any]
    verified: bool = True
    warnings: List[Dict[str, Any]] = []


class CheckoutResponse(BaseModel):
    url: Optional[str] = None
    sessionId: Optional[str] = None
    restored: bool = False
    profile: Optional[Dict[str, Any]] = None
    warnings: List[Dict[str, Any]] = []
