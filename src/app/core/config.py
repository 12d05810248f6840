"""
애플리케이션 설정 관리
"""
from pathlib import Path
from typing import Dict, Optional, Set

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_FILE_PATH = Path(__file__).resolve()

POLAR_API_URLS = {
    "sandbox": "https://sandbox-api.polar.sh",
    "production": "https://api.polar.sh",
}


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """환경 파일 후보를 가까운 디렉터리부터 수집"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    """프로젝트 전체에서 활용할 .env 파일들을 순차적으로 로드"""

    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()


class Settings(BaseSettings):
    """애플리케이션 설정"""

    model_config = SettingsConfigDict(
        env_file=tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None,
        case_sensitive=True,
        extra="allow",
    )

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    # Supabase 설정
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # 로깅 설정
    LOG_LEVEL: str = "INFO"

    # Polar 설정
    POLAR_ACCESS_TOKEN: Optional[str] = None
    POLAR_SERVER: str = "sandbox"
    POLAR_API_BASE_URL: Optional[str] = None
    POLAR_WEBHOOK_SECRET: str = ""
    POLAR_WEBHOOK_STRICT_VERIFY: bool = True
    POLAR_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # 상품 키 -> Polar 상품 ID
    POLAR_PRODUCT_ID_SAVER_MONTHLY: Optional[str] = None
    POLAR_PRODUCT_ID_SAVER_YEARLY: Optional[str] = None
    POLAR_PRODUCT_ID_PRO_MONTHLY: Optional[str] = None
    POLAR_PRODUCT_ID_PRO_YEARLY: Optional[str] = None
    POLAR_PRODUCT_ID_SUPER_MONTHLY: Optional[str] = None
    POLAR_PRODUCT_ID_SUPER_YEARLY: Optional[str] = None
    POLAR_PRODUCT_ID_CREDITS_30: Optional[str] = None
    POLAR_PRODUCT_ID_CREDITS_60: Optional[str] = None
    POLAR_PRODUCT_ID_CREDITS_120: Optional[str] = None
    POLAR_PRODUCT_ID_CREDITS_250: Optional[str] = None

    # PayPal 설정 (구독 해지 전용)
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_API_BASE_URL: str = "https://api-m.sandbox.paypal.com"

    # 알림 메일 발송 서비스
    NOTIFICATION_API_URL: Optional[str] = None
    NOTIFICATION_API_KEY: Optional[str] = None

    # 정산 정책
    OFFER_BONUS_PERCENT: int = 25
    IDEMPOTENCY_WINDOW_SECONDS: int = 300
    YEARLY_MIN_EXPIRY_MONTHS: int = 6
    # 배포된 스키마가 지원한다고 가정하는 선택 컬럼 (table.column, 콤마 구분)
    OPTIONAL_COLUMNS: str = "user_credits.polar_checkout_id,payments.polar_checkout_id"

    @field_validator("POLAR_SERVER")
    @classmethod
    def validate_polar_server(cls, v: str) -> str:
        normalized = (v or "").strip().lower()
        if normalized not in POLAR_API_URLS:
            raise ValueError("POLAR_SERVER는 sandbox 또는 production 이어야 합니다")
        return normalized

    @field_validator("OFFER_BONUS_PERCENT", "IDEMPOTENCY_WINDOW_SECONDS", "YEARLY_MIN_EXPIRY_MONTHS")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("음수 값은 허용되지 않습니다")
        return v

    @property
    def polar_api_base_url(self) -> str:
        """명시된 URL이 없으면 POLAR_SERVER 기준 기본 URL 사용"""
        if self.POLAR_API_BASE_URL:
            return self.POLAR_API_BASE_URL.rstrip("/")
        return POLAR_API_URLS[self.POLAR_SERVER]

    def polar_product_ids(self) -> Dict[str, str]:
        """설정된 상품 키별 Polar 상품 ID 매핑"""
        prefix = "POLAR_PRODUCT_ID_"
        mapping: Dict[str, str] = {}
        for name, value in self.model_dump().items():
            if name.startswith(prefix) and value:
                mapping[name[len(prefix):].lower()] = str(value)
        return mapping

    def optional_columns(self) -> Dict[str, Set[str]]:
        """OPTIONAL_COLUMNS 문자열을 테이블별 컬럼 집합으로 변환"""
        parsed: Dict[str, Set[str]] = {}
        for chunk in (self.OPTIONAL_COLUMNS or "").split(","):
            chunk = chunk.strip()
            if not chunk or "." not in chunk:
                continue
            table, column = chunk.split(".", 1)
            parsed.setdefault(table.strip(), set()).add(column.strip())
        return parsed


# 전역 설정 인스턴스
settings = Settings()
