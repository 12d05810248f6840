"""
크레딧 관련 API 라우터
크레딧 요약 조회와 사용자 요청 구독 해지 엔드포인트 제공
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.responses import BusinessException, error_response, success_response
from schemas import CancelSubscriptionRequest, CancelSubscriptionResult, CreditSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])
security = HTTPBearer()

# 크레딧 서비스 전역 변수 (main.py에서 설정됨)
credit_service = None


def set_dependencies(credit_svc):
    """의존성 설정 (main.py에서 호출)"""
    global credit_service
    credit_service = credit_svc


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """현재 사용자 정보를 가져오는 의존성"""
    from main import auth_service
    return await auth_service.verify_auth(credentials)


def _service_unavailable():
    logger.error("credit_service is not configured")
    return error_response(
        message="크레딧 서비스를 사용할 수 없습니다.",
        error_code="CREDIT_SERVICE_UNAVAILABLE",
    )


@router.get("")
async def get_credits(current_user = Depends(get_current_user)):
    """현재 사용자의 크레딧 요약 조회"""
    try:
        if not current_user:
            raise HTTPException(status_code=401, detail="인증이 필요합니다")
        if not credit_service:
            return _service_unavailable()

        summary = await credit_service.get_credit_summary(current_user.id)
        return success_response(
            data=CreditSummary(**summary).model_dump(),
            message="크레딧 정보 조회 성공",
        )

    except (HTTPException, BusinessException):
        raise
    except Exception as e:
        logger.error(f"크레딧 조회 실패: {e}")
        return error_response(
            message="크레딧 조회 중 오류가 발생했습니다",
            error_code="CREDIT_FETCH_ERROR",
        )


@router.post("/subscription/cancel")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    current_user = Depends(get_current_user),
):
    """구독 해지 예약 - 크레딧은 만료일까지 유지"""
    try:
        if not current_user:
            raise HTTPException(status_code=401, detail="인증이 필요합니다")
        if not credit_service:
            return _service_unavailable()

        result = await credit_service.cancel_subscription(
            current_user.id,
            request.subscription_id,
            request.reason,
        )
        return success_response(
            data=CancelSubscriptionResult(**result).model_dump(),
            message="구독 해지가 예약되었습니다",
        )

    except (HTTPException, BusinessException):
        raise
    except Exception as e:
        logger.error(f"구독 해지 실패: {e}")
        return error_response(
            message="구독 해지 중 오류가 발생했습니다",
            error_code="SUBSCRIPTION_CANCEL_ERROR",
        )
