"""
서비스 기본 클래스
"""
import logging
from typing import Any, Dict, Optional
from uuid import uuid4
from core.interfaces import IDatabaseHelper


class BaseService:
    """모든 서비스의 기본 클래스"""

    def __init__(self, db_helper: IDatabaseHelper):
        self.db_helper = db_helper
        self.logger = logging.getLogger(self.__class__.__name__)

    async def log_user_action(self, user_id: str, action: str, data: Dict[str, Any] = None):
        """사용자 액션 로깅 (실패해도 흐름을 막지 않음)"""
        try:
            await self.db_helper.log_system_event(
                event_type=f"user_{action}",
                event_data=data or {},
                user_id=user_id
            )
        except Exception as e:
            self.logger.warning(f"액션 로깅 실패: {e}")

    async def record_failure(
        self,
        *,
        action: str,
        error: Exception,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """실패 정보를 로그와 시스템 로그에 남기고 상관관계 ID 반환"""
        correlation_id = uuid4().hex
        event_payload: Dict[str, Any] = {
            "correlation_id": correlation_id,
            "action": action,
            "error_type": type(error).__name__,
            "message": str(error),
            **(context or {}),
        }
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            event_payload["status_code"] = status_code

        self.logger.error(
            "작업 실패: action=%s user_id=%s correlation_id=%s error=%s",
            action,
            user_id,
            correlation_id,
            error,
        )
        await self.db_helper.log_system_event(
            user_id=user_id,
            event_type=f"{action}_error",
            event_data=event_payload,
        )
        return correlation_id
