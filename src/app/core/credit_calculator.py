"""
크레딧 및 만료일 계산 (순수 함수)
"""
import calendar
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from core.product_catalog import PlanType

# 개월 수 근사 계산에 쓰는 한 달 길이
_APPROX_MONTH = timedelta(days=30)


def compute_credits(base_credits: int, has_offer: bool, bonus_percent: int) -> int:
    """오퍼 보유 시 보너스 비율을 더한 최종 크레딧 (반올림)"""
    if not has_offer or bonus_percent <= 0:
        return int(base_credits)

    boosted = Decimal(int(base_credits)) * (Decimal(100) + Decimal(bonus_percent)) / Decimal(100)
    return int(boosted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def add_months(value: datetime, months: int) -> datetime:
    """월 단위 덧셈 (말일은 해당 월의 마지막 날로 보정)"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_expiry(
    plan_type: PlanType,
    provider_period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """만료일 계산

    - one_time 은 항상 None
    - 공급자 기간 종료일이 있으면 그대로 사용
    - 없으면 monthly 는 +1개월, yearly 는 +1년
    """
    plan_type = PlanType(plan_type)
    if plan_type is PlanType.ONE_TIME:
        return None
    if provider_period_end is not None:
        return provider_period_end

    current = now or datetime.now(timezone.utc)
    if plan_type is PlanType.YEARLY:
        return add_months(current, 12)
    return add_months(current, 1)


def correct_yearly_expiry(
    plan_type: PlanType,
    expires_at: Optional[datetime],
    started_at: Optional[datetime],
    min_months: int = 6,
) -> Optional[datetime]:
    """연간 플랜인데 시작일로부터 min_months 미만인 만료일은 시작일 + 1년으로 보정"""
    if PlanType(plan_type) is not PlanType.YEARLY or expires_at is None or started_at is None:
        return expires_at

    months = (expires_at - started_at) / _APPROX_MONTH
    if months < min_months:
        return add_months(started_at, 12)
    return expires_at


def months_until(target: Optional[datetime], now: Optional[datetime] = None) -> float:
    """현재부터 target 까지 남은 개월 수 (30일 기준 근사)"""
    if target is None:
        return 0.0
    current = now or datetime.now(timezone.utc)
    return (target - current) / _APPROX_MONTH
