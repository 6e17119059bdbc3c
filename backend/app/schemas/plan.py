from pydantic import BaseModel, Field
from typing import Literal, Optional


class PlanCreate(BaseModel):
    key: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9_-]+$")
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    features: Optional[str] = None
    recurring_price: int = Field(ge=0, description="請求額 (セント単位)")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3, description="省略時は DEFAULT_CURRENCY")
    interval: Literal["month", "year", "none"] = "month"
    trial_days: int = Field(default=0, ge=0, le=365)
    sort_order: int = 0


class PlanUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    features: Optional[str] = None
    recurring_price: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    interval: Optional[Literal["month", "year", "none"]] = None
    trial_days: Optional[int] = Field(default=None, ge=0, le=365)
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None
