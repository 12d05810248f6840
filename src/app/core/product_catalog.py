"""
결제 상품 카탈로그 관리

Polar 상품 ID를 멤버십/플랜/크레딧/가격 정의로 매핑한다.
상품 ID는 설정(POLAR_PRODUCT_ID_*)에서 주입된다.
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional


class Membership(str, Enum):
    """멤버십 등급"""
    SAVER = "saver"
    PRO = "pro"
    SUPER = "super"
    TEAM = "team"
    ADD_ON = "add_on"
    BASIC = "basic"


class PlanType(str, Enum):
    """결제 주기"""
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class ProductCatalogEntry:
    """상품 정의"""
    key: str
    membership: Membership
    plan_type: PlanType
    credits: int
    price: Decimal
    product_id: Optional[str] = None

    @property
    def is_subscription(self) -> bool:
        return self.plan_type is not PlanType.ONE_TIME


class ProductCatalog:
    """상품 카탈로그 조회기"""

    DEFAULT_PRODUCTS: Dict[str, ProductCatalogEntry] = {
        entry.key: entry
        for entry in (
            ProductCatalogEntry("saver_monthly", Membership.SAVER, PlanType.MONTHLY, 75, Decimal("19.90")),
            ProductCatalogEntry("saver_yearly", Membership.SAVER, PlanType.YEARLY, 75, Decimal("178.00")),
            ProductCatalogEntry("pro_monthly", Membership.PRO, PlanType.MONTHLY, 200, Decimal("39.90")),
            ProductCatalogEntry("pro_yearly", Membership.PRO, PlanType.YEARLY, 200, Decimal("358.00")),
            ProductCatalogEntry("super_monthly", Membership.SUPER, PlanType.MONTHLY, 650, Decimal("99.90")),
            ProductCatalogEntry("super_yearly", Membership.SUPER, PlanType.YEARLY, 650, Decimal("899.00")),
            # 일회성 크레딧 팩
            ProductCatalogEntry("credits_30", Membership.ADD_ON, PlanType.ONE_TIME, 30, Decimal("14.90")),
            ProductCatalogEntry("credits_60", Membership.ADD_ON, PlanType.ONE_TIME, 60, Decimal("29.90")),
            ProductCatalogEntry("credits_120", Membership.ADD_ON, PlanType.ONE_TIME, 120, Decimal("49.90")),
            ProductCatalogEntry("credits_250", Membership.ADD_ON, PlanType.ONE_TIME, 250, Decimal("99.90")),
        )
    }

    def __init__(
        self,
        product_ids: Mapping[str, str],
        products: Optional[Iterable[ProductCatalogEntry]] = None,
    ):
        base = {entry.key: entry for entry in products} if products is not None else dict(self.DEFAULT_PRODUCTS)
        self._by_product_id: Dict[str, ProductCatalogEntry] = {}

        for entry in base.values():
            product_id = product_ids.get(entry.key) or entry.product_id
            bound = replace(entry, product_id=product_id)
            if product_id:
                self._by_product_id[product_id] = bound

    @classmethod
    def from_settings(cls, settings) -> "ProductCatalog":
        """설정 객체의 POLAR_PRODUCT_ID_* 값으로 카탈로그 생성"""
        return cls(settings.polar_product_ids())

    def get_product(self, provider_product_id: Optional[str]) -> Optional[ProductCatalogEntry]:
        """공급자 상품 ID로 상품 조회 (없으면 None)"""
        if not provider_product_id:
            return None
        return self._by_product_id.get(provider_product_id)
