"""
결제 웹훅 정산 오류 분류

retryable=True 인 오류는 웹훅 응답을 실패(503)로 돌려 공급자가 재전송하게 하고,
그 외 오류는 이벤트를 기록 후 폐기한다.
"""
from typing import Optional

from core.responses import BusinessException


class ReconciliationError(BusinessException):
    """정산 처리 공통 예외"""

    retryable: bool = False

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        super().__init__(message, error_code, status_code)


class UnresolvedUser(ReconciliationError):
    """웹훅 페이로드로 내부 사용자를 특정할 수 없음"""

    def __init__(self, message: str = "사용자를 식별할 수 없습니다", user_id: Optional[str] = None):
        super().__init__(message, "UNRESOLVED_USER", 422)
        self.user_id = user_id


class UnresolvedProduct(ReconciliationError):
    """상품 카탈로그에 없는 상품"""

    def __init__(self, product_id: Optional[str]):
        super().__init__(f"알 수 없는 상품입니다: {product_id}", "UNRESOLVED_PRODUCT", 422)
        self.product_id = product_id


class UnresolvedGrant(ReconciliationError):
    """구독 ID에 연결된 크레딧 레코드가 아직 없음 (활성화 이벤트보다 먼저 도착)"""

    retryable = True

    def __init__(self, subscription_id: Optional[str]):
        super().__init__(
            f"구독 {subscription_id}에 연결된 크레딧 레코드가 없습니다",
            "UNRESOLVED_GRANT",
            503,
        )
        self.subscription_id = subscription_id


class AlreadyApplied(ReconciliationError):
    """이미 반영된 이벤트"""

    def __init__(self, event_kind: str, event_id: Optional[str]):
        super().__init__(f"이미 처리된 이벤트입니다: {event_kind} {event_id}", "ALREADY_APPLIED", 200)
        self.event_kind = event_kind
        self.event_id = event_id


class StorageError(ReconciliationError):
    """저장소 쓰기/조회 실패"""

    retryable = True

    def __init__(self, message: str = "저장소 작업에 실패했습니다", cause: Optional[Exception] = None):
        super().__init__(message, "STORAGE_ERROR", 503)
        self.cause = cause


class SchemaColumnMissing(StorageError):
    """배포된 스키마에 선택 컬럼이 없음"""

    def __init__(self, table: str, column: str, cause: Optional[Exception] = None):
        super().__init__(f"{table}.{column} 컬럼이 존재하지 않습니다", cause)
        self.error_code = "SCHEMA_COLUMN_MISSING"
        self.table = table
        self.column = column


class RaceLostOnLink(ReconciliationError):
    """동시 이벤트가 먼저 레코드를 생성/연결하여 유니크 제약 위반 발생"""

    retryable = True

    def __init__(self, constraint: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(f"동시 처리 경합으로 유니크 제약 위반: {constraint}", "RACE_LOST_ON_LINK", 409)
        self.constraint = constraint
        self.cause = cause
