from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from supabase import Client
import logging

# Core imports
from core.interfaces import IAuthService, IDatabaseHelper
from core.base_service import BaseService
from core.responses import AuthenticationException

logger = logging.getLogger(__name__)


class AuthService(BaseService, IAuthService):
    """Supabase JWT 인증 서비스"""

    def __init__(self, supabase_client: Client, db_helper: IDatabaseHelper):
        super().__init__(db_helper)
        self.supabase = supabase_client

    async def verify_auth(self, credentials: HTTPAuthorizationCredentials):
        """JWT 토큰 검증 후 Supabase 사용자 반환"""

        try:
            return await self._verify_token_internal(credentials)
        except AuthenticationException:
            raise HTTPException(status_code=401, detail="유효하지 않은 토큰입니다.")

    async def _verify_token_internal(self, credentials: HTTPAuthorizationCredentials):
        """내부 토큰 검증 로직"""
        if credentials is None or not credentials.credentials:
            raise AuthenticationException("인증 토큰이 필요합니다")

        try:
            response = self.supabase.auth.get_user(credentials.credentials)
        except Exception as e:
            # gotrue 는 만료/위조 토큰에 대해 여러 예외 타입을 던진다
            self.logger.warning(f"토큰 검증 중 오류: {e}")
            raise AuthenticationException("인증 처리 중 오류가 발생했습니다") from e

        if response is None or response.user is None:
            raise AuthenticationException("유효하지 않은 토큰입니다")
        return response.user
