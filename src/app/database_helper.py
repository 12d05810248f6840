"""
데이터베이스 연결 및 CRUD 작업을 위한 헬퍼 모듈

크레딧 레코드(user_credits), 결제 원장(payments), 사용자(users),
UTM 어트리뷰션(user_utm_tracking), 시스템 로그(system_logs) 테이블을 다룬다.

정산 판단에 쓰이는 조회/쓰기는 실패 시 StorageError 를 올려
웹훅 응답이 실패로 돌아가도록 한다 (fail closed).
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set
from datetime import datetime, timezone
from supabase import Client
from postgrest.exceptions import APIError
import logging

from core.errors import RaceLostOnLink, SchemaColumnMissing, StorageError
from core.interfaces import IDatabaseHelper

logger = logging.getLogger(__name__)

# PostgreSQL/PostgREST 오류 코드
UNDEFINED_COLUMN_CODES = {"42703", "PGRST204"}
UNIQUE_VIOLATION_CODE = "23505"

GRANTS_TABLE = "user_credits"
PAYMENTS_TABLE = "payments"
USERS_TABLE = "users"
UTM_TABLE = "user_utm_tracking"

# 배포 환경에 따라 없을 수 있는 선택 컬럼 후보
OPTIONAL_COLUMN_CANDIDATES: Dict[str, Set[str]] = {
    GRANTS_TABLE: {"polar_checkout_id"},
    PAYMENTS_TABLE: {"polar_checkout_id"},
}

UTM_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "referrer",
    "landing_page",
)


class DatabaseHelper(IDatabaseHelper):
    def __init__(
        self,
        supabase_client: Client,
        admin_client: Client = None,
        optional_columns: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.supabase = supabase_client
        self.admin_client = admin_client or supabase_client
        # 배포 스키마가 지원한다고 알려진 선택 컬럼
        self._optional_columns: Dict[str, Set[str]] = {
            table: set(columns) for table, columns in (optional_columns or {}).items()
        }
        self._unsupported: Dict[str, Set[str]] = {}

    def _get_client(self, use_admin: bool = False):
        """적절한 클라이언트 반환 - 일반적으로 admin client 사용"""
        return self.admin_client if use_admin or self.admin_client else self.supabase

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _error_code(exc: Exception) -> Optional[str]:
        code = getattr(exc, "code", None)
        return str(code) if code is not None else None

    # 스키마 capability 협상

    def supports(self, table: str, column: str) -> bool:
        """선택 컬럼을 배포 스키마가 지원하는지 여부"""
        if column in self._unsupported.get(table, set()):
            return False
        return column in self._optional_columns.get(table, set())

    @staticmethod
    def _is_optional(table: str, column: str) -> bool:
        return column in OPTIONAL_COLUMN_CANDIDATES.get(table, set())

    def _mark_unsupported(self, table: str, column: str) -> None:
        self._unsupported.setdefault(table, set()).add(column)
        logger.warning(f"[SCHEMA] {table}.{column} 컬럼 미지원으로 표시, 이후 쓰기에서 제외합니다")

    def _strip_unsupported(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """지원하지 않는 선택 컬럼을 쓰기 행에서 제거"""
        return {
            key: value
            for key, value in row.items()
            if not self._is_optional(table, key) or self.supports(table, key)
        }

    def _missing_optional_column(self, table: str, exc: APIError, row: Dict[str, Any]) -> Optional[str]:
        """'컬럼 없음' 오류가 선택 컬럼 때문이면 해당 컬럼명 반환"""
        if self._error_code(exc) not in UNDEFINED_COLUMN_CODES:
            return None
        text = " ".join(
            str(part) for part in (getattr(exc, "message", None), getattr(exc, "details", None), exc) if part
        )
        candidates = [key for key in row if self._is_optional(table, key)]
        for column in candidates:
            if column in text:
                return column
        if len(candidates) == 1:
            return candidates[0]
        return None

    def _write_with_schema_fallback(
        self,
        table: str,
        row: Dict[str, Any],
        write: Callable[[Dict[str, Any]], Any],
    ):
        """선택 컬럼 누락 오류 시 해당 컬럼을 빼고 한 번만 재시도"""
        payload = self._strip_unsupported(table, row)
        try:
            return write(payload)
        except APIError as exc:
            column = self._missing_optional_column(table, exc, payload)
            if column is None:
                raise
            self._mark_unsupported(table, column)
            retry_payload = {key: value for key, value in payload.items() if key != column}

        try:
            return write(retry_payload)
        except APIError as exc:
            again = self._missing_optional_column(table, exc, retry_payload)
            if again is not None or self._error_code(exc) in UNDEFINED_COLUMN_CODES:
                raise SchemaColumnMissing(table, again or column, exc) from exc
            raise

    def _raise_storage_error(self, operation: str, exc: Exception):
        logger.error(f"{operation} 실패: {exc}")
        if isinstance(exc, StorageError):
            raise exc
        raise StorageError(f"{operation} 실패", exc) from exc

    # 사용자

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """정산용 사용자 정보 조회 (id, email, full_name, offers)"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(USERS_TABLE)
                .select('id, email, full_name, offers')
                .eq('id', user_id)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except Exception as e:
            self._raise_storage_error("사용자 조회", e)

    async def clear_user_offer(self, user_id: str, membership: str, price: float) -> bool:
        """오퍼 사용 처리 - offers 플래그 해제 및 구매 플랜/가격 기록"""
        try:
            client = self._get_client(use_admin=True)
            result = client.table(USERS_TABLE).update({
                'offers': False,
                'offer_plan_buy': membership,
                'offer_price_buy': price,
            }).eq('id', user_id).execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"사용자 오퍼 해제 실패: {e}")
            return False

    # 크레딧 레코드

    async def find_grant_by_subscription(self, provider: str, subscription_id: str) -> Optional[Dict[str, Any]]:
        """(provider, subscription_id) 로 크레딧 레코드 조회"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(GRANTS_TABLE)
                .select('*')
                .eq('payment_provider', provider)
                .eq('subscription_id', subscription_id)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except Exception as e:
            self._raise_storage_error("구독 ID 기준 크레딧 조회", e)

    async def find_grant_by_checkout(self, checkout_id: str) -> Optional[Dict[str, Any]]:
        """checkout ID 로 크레딧 레코드 조회 (컬럼 미지원 시 None)"""
        if not checkout_id or not self.supports(GRANTS_TABLE, 'polar_checkout_id'):
            return None
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(GRANTS_TABLE)
                .select('*')
                .eq('polar_checkout_id', checkout_id)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except APIError as e:
            if self._error_code(e) in UNDEFINED_COLUMN_CODES:
                self._mark_unsupported(GRANTS_TABLE, 'polar_checkout_id')
                return None
            self._raise_storage_error("checkout ID 기준 크레딧 조회", e)
        except Exception as e:
            self._raise_storage_error("checkout ID 기준 크레딧 조회", e)

    async def find_unlinked_grant(self, user_id: str, provider: str) -> Optional[Dict[str, Any]]:
        """구독 ID가 아직 연결되지 않은 최신 활성 구독형 레코드 조회"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(GRANTS_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .eq('payment_provider', provider)
                .is_('subscription_id', 'null')
                .eq('status', 'active')
                .neq('plan_type', 'one_time')
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except Exception as e:
            self._raise_storage_error("미연결 크레딧 조회", e)

    async def find_recent_grant(
        self,
        user_id: str,
        provider: str,
        since: datetime,
        *,
        exclude_subscription_id: Optional[str] = None,
        subscription_only: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """since 이후 생성된 사용자 크레딧 레코드 중 최신 1건 조회

        subscription_only=True 이면 활성 구독형 레코드 중
        구독 ID가 없거나 exclude_subscription_id 와 다른 것만 대상으로 한다.
        """
        try:
            client = self._get_client(use_admin=True)
            query = (
                client.table(GRANTS_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .eq('payment_provider', provider)
                .gte('created_at', since.isoformat())
            )
            if subscription_only:
                query = query.eq('status', 'active').neq('plan_type', 'one_time')
                if exclude_subscription_id:
                    query = query.or_(
                        f"subscription_id.is.null,subscription_id.neq.{exclude_subscription_id}"
                    )
            result = query.order('created_at', desc=True).limit(1).execute()
            return result.data[0] if result.data else None
        except Exception as e:
            self._raise_storage_error("최근 크레딧 조회", e)

    async def list_user_grants(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """사용자 크레딧 레코드 목록 (최신순)"""
        try:
            client = self._get_client(use_admin=True)
            query = client.table(GRANTS_TABLE).select('*').eq('user_id', user_id)
            if status:
                query = query.eq('status', status)
            result = query.order('created_at', desc=True).execute()
            return result.data or []
        except Exception as e:
            self._raise_storage_error("사용자 크레딧 목록 조회", e)

    async def insert_grant(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """크레딧 레코드 생성

        유니크 제약(구독 ID, checkout ID, 미연결 슬롯) 위반은 RaceLostOnLink 로 변환한다.
        """
        client = self._get_client(use_admin=True)

        def _insert(payload: Dict[str, Any]):
            return client.table(GRANTS_TABLE).insert(payload).execute()

        try:
            result = self._write_with_schema_fallback(GRANTS_TABLE, row, _insert)
        except APIError as e:
            if self._error_code(e) == UNIQUE_VIOLATION_CODE:
                logger.info(f"크레딧 레코드 생성 경합 감지: {getattr(e, 'message', e)}")
                raise RaceLostOnLink(getattr(e, 'details', None) or getattr(e, 'message', None), e) from e
            self._raise_storage_error("크레딧 레코드 생성", e)
        except Exception as e:
            self._raise_storage_error("크레딧 레코드 생성", e)

        if not result.data:
            raise StorageError("크레딧 레코드 생성 결과가 비어 있습니다")
        return result.data[0]

    async def update_grant(
        self,
        grant_id: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """조건부 크레딧 레코드 업데이트 (compare-and-set)

        expected 의 각 컬럼 값이 현재 행과 일치할 때만 갱신한다 (None 은 IS NULL).
        조건 불일치로 갱신된 행이 없으면 None 을 반환한다.
        """
        client = self._get_client(use_admin=True)
        conditions = dict(expected or {})

        def _update(payload: Dict[str, Any]):
            query = client.table(GRANTS_TABLE).update(payload).eq('id', grant_id)
            for column, value in conditions.items():
                query = query.is_(column, 'null') if value is None else query.eq(column, value)
            return query.execute()

        payload = {**fields, 'updated_at': self._now_iso()}
        try:
            result = self._write_with_schema_fallback(GRANTS_TABLE, payload, _update)
        except APIError as e:
            if self._error_code(e) == UNIQUE_VIOLATION_CODE:
                logger.info(f"크레딧 레코드 연결 경합 감지: {getattr(e, 'message', e)}")
                raise RaceLostOnLink(getattr(e, 'details', None) or getattr(e, 'message', None), e) from e
            self._raise_storage_error("크레딧 레코드 업데이트", e)
        except Exception as e:
            self._raise_storage_error("크레딧 레코드 업데이트", e)

        return result.data[0] if result.data else None

    # 결제 원장

    async def find_payment_by_checkout(self, checkout_id: str) -> Optional[Dict[str, Any]]:
        """checkout/order ID 로 결제 기록 조회"""
        if not checkout_id or not self.supports(PAYMENTS_TABLE, 'polar_checkout_id'):
            return None
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(PAYMENTS_TABLE)
                .select('id')
                .eq('polar_checkout_id', checkout_id)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except APIError as e:
            if self._error_code(e) in UNDEFINED_COLUMN_CODES:
                self._mark_unsupported(PAYMENTS_TABLE, 'polar_checkout_id')
                return None
            self._raise_storage_error("결제 기록 조회", e)
        except Exception as e:
            self._raise_storage_error("결제 기록 조회", e)

    async def insert_payment(self, row: Dict[str, Any]) -> bool:
        """결제 기록 추가 - 동일 checkout ID 가 이미 있으면 False"""
        client = self._get_client(use_admin=True)

        def _insert(payload: Dict[str, Any]):
            return client.table(PAYMENTS_TABLE).insert(payload).execute()

        try:
            result = self._write_with_schema_fallback(PAYMENTS_TABLE, row, _insert)
            return bool(result.data)
        except APIError as e:
            if self._error_code(e) == UNIQUE_VIOLATION_CODE:
                logger.info(f"이미 기록된 결제입니다: {row.get('polar_checkout_id')}")
                return False
            self._raise_storage_error("결제 기록 추가", e)
        except Exception as e:
            self._raise_storage_error("결제 기록 추가", e)

    # UTM 어트리뷰션

    async def record_conversion(self, user_id: str, amount: float, currency: str) -> bool:
        """첫 유입(first_touch) UTM 정보를 복사해 구매 전환 기록 추가"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(UTM_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .eq('attribution_type', 'first_touch')
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
            if not result.data:
                logger.info(f"UTM 첫 유입 정보가 없어 전환 기록을 생략합니다: {user_id}")
                return False

            first_touch = result.data[0]
            conversion = {field: first_touch.get(field) for field in UTM_FIELDS}
            conversion.update({
                'user_id': user_id,
                'attribution_type': 'conversion',
                'event_type': 'purchase',
                'event_value': amount,
                'event_currency': (currency or 'USD').upper(),
            })
            inserted = client.table(UTM_TABLE).insert(conversion).execute()
            return bool(inserted.data)
        except Exception as e:
            logger.error(f"UTM 전환 기록 실패: {e}")
            return False

    # 시스템 로그

    async def log_system_event(self, user_id: str = None, event_type: str = 'info',
                             event_data: Dict = None, ip_address: str = None,
                             user_agent: str = None) -> bool:
        """시스템 이벤트 로그 기록"""
        try:
            log_data = {
                'user_id': user_id,
                'event_type': event_type,
                'event_data': event_data or {},
                'ip_address': ip_address,
                'user_agent': user_agent
            }

            result = self.admin_client.table('system_logs').insert(log_data).execute()
            return len(result.data) > 0
        except Exception as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False

    async def has_processed_webhook_event(self, provider: str, event_id: str) -> bool:
        """지정한 공급자 웹훅 이벤트가 이미 처리되었는지 확인"""
        try:
            if not event_id:
                return False

            event_type = f"{provider}_webhook"
            client = self._get_client(use_admin=True)
            result = (
                client.table('system_logs')
                .select('id')
                .eq('event_type', event_type)
                .contains('event_data', {'event_id': event_id})
                .limit(1)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            # 이벤트 단위 중복 확인은 최적화일 뿐, 실제 멱등성은 정산 로직이 보장한다
            logger.error(f"웹훅 이벤트 중복 확인 실패: {e}")
            return False

    async def record_webhook_event(self, provider: str, event_id: str, status: str, payload: Dict[str, Any] = None) -> bool:
        """웹훅 이벤트 처리 기록"""
        if not event_id:
            return False

        event_type = f"{provider}_webhook"
        event_payload = {
            'event_id': event_id,
            'status': status,
        }
        if payload:
            event_payload['payload'] = payload

        return await self.log_system_event(
            user_id=(payload or {}).get('user_id'),
            event_type=event_type,
            event_data=event_payload,
        )
