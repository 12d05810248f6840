"""
크레딧/구독 API 요청·응답 스키마
"""
from pydantic import BaseModel, Field
from typing import Optional


class CancelSubscriptionRequest(BaseModel):
    """구독 해지 요청"""
    subscription_id: str = Field(..., min_length=1, description="해지할 공급자 구독 ID")
    reason: Optional[str] = Field(None, max_length=500, description="해지 사유 (PayPal 에 전달)")


class CreditSummary(BaseModel):
    """사용자 크레딧 요약"""
    credits: int = Field(0, description="활성 레코드 크레딧 합계")
    membership: Optional[str] = Field(None, description="대표 레코드 멤버십")
    plan_type: Optional[str] = Field(None, description="one_time / monthly / yearly")
    expires_at: Optional[str] = Field(None, description="대표 레코드 만료일 (ISO 8601)")
    canceled: bool = Field(False, description="해지 예약 여부")
    subscription_id: Optional[str] = None
    provider: Optional[str] = None
    has_active_subscription: bool = False
    has_ever_had_subscription: bool = False


class CancelSubscriptionResult(BaseModel):
    """구독 해지 결과"""
    success: bool
    provider: Optional[str] = None
    expires_at: Optional[str] = Field(None, description="크레딧 유지 기한")
