from pydantic import BaseModel, ConfigDict, Field
from typing import Literal


class SubscriptionRequest(BaseModel):
    """POST /subscriptions: 新規購読 / プラン変更"""
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(alias="businessId")
    plan_key: str = Field(alias="planKey", min_length=1, max_length=50)
    action: Literal["subscribe", "change"]


class LifecycleRequest(BaseModel):
    """PUT /subscriptions: 一時停止 / 再開 / 解約 / 解約予約の取り消し"""
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(alias="businessId")
    action: Literal["pause", "resume", "cancel", "reactivate"]
    immediate: bool = False
