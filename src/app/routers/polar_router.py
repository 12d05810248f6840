"""
Polar Webhook Router

Handles Polar webhook events:
- Standard Webhooks signature verification (HMAC-SHA256, base64)
- dispatch of checkout/subscription/order/refund events to the reconciliation service
- event-level idempotency tracking via system_logs keyed on the webhook-id header
- retryable failures answered with 503 so that Polar redelivers
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Header, HTTPException, Request

from core.config import settings
from core.errors import AlreadyApplied, ReconciliationError
from core.responses import success_response
from services.polar_events import CheckoutEvent, OrderEvent, RefundEvent, SubscriptionEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "polar"])

PROVIDER = "polar"
SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"

HandlerResult = Tuple[Optional[str], Dict[str, Any]]
HandlerFunc = Callable[["PolarHandlerContext"], Awaitable[HandlerResult]]

# set_dependencies() 로 주입되는 서비스
reconciliation_service = None  # type: ignore
db_helper = None  # type: ignore


@dataclass(slots=True)
class PolarHandlerContext:
    event_type: str
    data: Dict[str, Any]
    reconciliation_service: Any
    event_id: Optional[str]


def set_dependencies(reconciliation_svc, db_helper_svc=None) -> None:
    """main.py에서 호출하여 서비스 인스턴스를 주입한다."""
    global reconciliation_service, db_helper
    reconciliation_service = reconciliation_svc
    db_helper = db_helper_svc


def _signing_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX):])
    return secret.encode("utf-8")


def _verify_signature(
    raw: bytes,
    webhook_id: Optional[str],
    webhook_timestamp: Optional[str],
    webhook_signature: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """Verify Standard Webhooks signature headers if a secret is configured."""

    strict = settings.POLAR_WEBHOOK_STRICT_VERIFY
    secret = (settings.POLAR_WEBHOOK_SECRET or "").strip()

    if not secret:
        if strict:
            logger.warning("[POLAR] strict verify enabled but no webhook secret configured")
            return False
        logger.warning("[POLAR] webhook secret not configured; signature check skipped")
        return True

    if not webhook_id or not webhook_timestamp or not webhook_signature:
        logger.warning("[POLAR] missing webhook-id/webhook-timestamp/webhook-signature header")
        return not strict

    try:
        timestamp = int(webhook_timestamp)
    except ValueError:
        logger.warning("[POLAR] invalid webhook-timestamp header: %s", webhook_timestamp)
        return not strict

    current = time.time() if now is None else now
    if abs(current - timestamp) > settings.POLAR_WEBHOOK_TOLERANCE_SECONDS:
        logger.error("[POLAR] webhook timestamp outside tolerance: %s", webhook_timestamp)
        return not strict

    try:
        key = _signing_key(secret)
    except (binascii.Error, ValueError) as e:
        logger.error(f"[POLAR] webhook secret is not valid base64: {e}")
        return not strict

    signed = f"{webhook_id}.{webhook_timestamp}.".encode("utf-8") + raw
    expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")

    for entry in webhook_signature.split():
        version, _, provided = entry.partition(",")
        if version == SIGNATURE_VERSION and hmac.compare_digest(expected, provided):
            return True

    logger.error("[POLAR] signature mismatch")
    return not strict


async def _handle_checkout(ctx: PolarHandlerContext) -> HandlerResult:
    event = CheckoutEvent.from_payload(ctx.data)
    return "checkout", await ctx.reconciliation_service.handle_checkout_completed(event)


async def _handle_subscription_active(ctx: PolarHandlerContext) -> HandlerResult:
    event = SubscriptionEvent.from_payload(ctx.data)
    return "subscription", await ctx.reconciliation_service.handle_subscription_activated(event)


async def _handle_subscription_canceled(ctx: PolarHandlerContext) -> HandlerResult:
    event = SubscriptionEvent.from_payload(ctx.data)
    return "cancellation", await ctx.reconciliation_service.handle_subscription_canceled(event)


async def _handle_subscription_uncanceled(ctx: PolarHandlerContext) -> HandlerResult:
    event = SubscriptionEvent.from_payload(ctx.data)
    return "cancellation", await ctx.reconciliation_service.handle_subscription_uncanceled(event)


async def _handle_subscription_revoked(ctx: PolarHandlerContext) -> HandlerResult:
    event = SubscriptionEvent.from_payload(ctx.data)
    return "revocation", await ctx.reconciliation_service.handle_subscription_revoked(event)


async def _handle_subscription_updated(ctx: PolarHandlerContext) -> HandlerResult:
    event = SubscriptionEvent.from_payload(ctx.data)
    return "plan_change", await ctx.reconciliation_service.handle_subscription_updated(event)


async def _handle_order_paid(ctx: PolarHandlerContext) -> HandlerResult:
    event = OrderEvent.from_payload(ctx.data)
    return "payment", await ctx.reconciliation_service.handle_order_paid(event)


async def _handle_refund_created(ctx: PolarHandlerContext) -> HandlerResult:
    event = RefundEvent.from_payload(ctx.data)
    return "refund", await ctx.reconciliation_service.handle_refund_created(event)


async def _handle_unhandled_event(_: PolarHandlerContext) -> HandlerResult:
    return None, {}


HANDLER_MAP: Dict[str, HandlerFunc] = {
    "checkout.updated": _handle_checkout,
    "subscription.active": _handle_subscription_active,
    "subscription.canceled": _handle_subscription_canceled,
    "subscription.uncanceled": _handle_subscription_uncanceled,
    "subscription.revoked": _handle_subscription_revoked,
    "subscription.updated": _handle_subscription_updated,
    "order.paid": _handle_order_paid,
    "refund.created": _handle_refund_created,
}


def _resolve_handler(event_type_normalized: str) -> HandlerFunc:
    if not event_type_normalized:
        return _handle_unhandled_event
    return HANDLER_MAP.get(event_type_normalized, _handle_unhandled_event)


async def _get_services():
    """polar 처리에 필요한 서비스 인스턴스를 반환"""
    reconciliation_svc = reconciliation_service
    db_helper_svc = db_helper

    if reconciliation_svc is None or db_helper_svc is None:
        try:
            from core.factory import ServiceFactory

            if reconciliation_svc is None:
                reconciliation_svc = ServiceFactory.get_reconciliation_service()
            if db_helper_svc is None:
                db_helper_svc = ServiceFactory.get_db_helper()
        except ValueError as e:  # pragma: no cover - 진단용 경로
            logger.error("[POLAR] service fallback acquisition failed: %s", e)

    return reconciliation_svc, db_helper_svc


def _outcome(
    *,
    status: str,
    event_id: Optional[str],
    event_type: str,
    processed: Optional[Dict[str, Any]] = None,
    event_category: Optional[str] = None,
    duplicate: bool = False,
    skip: bool = False,
    retryable: bool = False,
    user_id: Optional[str] = None,
    error_code: Optional[str] = None,
    log_recorded: bool = False,
) -> Dict[str, Any]:
    return {
        "processed": processed or {},
        "event_id": event_id,
        "event_type": event_type,
        "event_category": event_category,
        "status": status,
        "duplicate": duplicate,
        "skip": skip,
        "retryable": retryable,
        "user_id": user_id,
        "error_code": error_code,
        "log_recorded": log_recorded,
    }


async def process_polar_payload(
    payload: Dict[str, Any],
    *,
    event_id: Optional[str] = None,
    allow_duplicate: bool = False,
    replay_reason: str | None = None,
) -> Dict[str, Any]:
    """Polar 웹훅 페이로드를 처리하고 결과와 로깅 상태를 반환"""

    event_type: str = payload.get("type") or payload.get("event_type") or ""
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    event_type_normalized = event_type.strip().lower()

    logger.info(
        "[POLAR] event=%s event_id=%s object_id=%s",
        event_type,
        event_id,
        data.get("id"),
    )

    handler = _resolve_handler(event_type_normalized)
    if handler is _handle_unhandled_event:
        logger.info("[POLAR] unhandled event type ignored: %s", event_type)
        return _outcome(status="skipped", event_id=event_id, event_type=event_type, skip=True)

    reconciliation_svc, db_helper_svc = await _get_services()
    if reconciliation_svc is None:
        logger.error("[POLAR] reconciliation service unavailable; asking provider to retry")
        return _outcome(
            status="unavailable",
            event_id=event_id,
            event_type=event_type,
            retryable=True,
            error_code="SERVICE_UNAVAILABLE",
        )

    if event_id and db_helper_svc and not allow_duplicate:
        if await db_helper_svc.has_processed_webhook_event(PROVIDER, event_id):
            logger.info("[POLAR] duplicate event ignored: %s", event_id)
            return _outcome(status="duplicate", event_id=event_id, event_type=event_type, duplicate=True)

    context = PolarHandlerContext(
        event_type=event_type_normalized,
        data=data,
        reconciliation_service=reconciliation_svc,
        event_id=event_id,
    )

    try:
        event_category, results = await handler(context)
    except AlreadyApplied as e:
        logger.info("[POLAR] event already applied: %s", e.message)
        return _outcome(
            status="duplicate",
            event_id=event_id,
            event_type=event_type,
            duplicate=True,
            error_code=e.error_code,
        )
    except ReconciliationError as e:
        if e.retryable:
            logger.error("[POLAR] retryable failure for %s (%s): %s", event_type, e.error_code, e.message)
            return _outcome(
                status="failed",
                event_id=event_id,
                event_type=event_type,
                retryable=True,
                error_code=e.error_code,
            )
        logger.warning("[POLAR] event dropped for %s (%s): %s", event_type, e.error_code, e.message)
        log_recorded = False
        if event_id and db_helper_svc:
            log_recorded = await db_helper_svc.record_webhook_event(
                PROVIDER,
                event_id,
                "dropped",
                {"event_type": event_type, "error_code": e.error_code, "message": e.message, "raw_payload": payload},
            )
        return _outcome(
            status="dropped",
            event_id=event_id,
            event_type=event_type,
            skip=True,
            error_code=e.error_code,
            log_recorded=log_recorded,
        )

    results = results or {}
    status_label = "replayed" if allow_duplicate else "processed"
    user_id = results.get("user_id")

    payload_data: Dict[str, Any] = {
        "event_type": event_type,
        "event_category": event_category,
        "results": results,
        "user_id": user_id,
        "raw_payload": payload,
    }
    if replay_reason:
        payload_data["replay_reason"] = replay_reason

    log_recorded = False
    if event_id and db_helper_svc:
        log_recorded = await db_helper_svc.record_webhook_event(PROVIDER, event_id, status_label, payload_data)

    return _outcome(
        status=status_label,
        event_id=event_id,
        event_type=event_type,
        processed=results,
        event_category=event_category,
        user_id=user_id,
        log_recorded=log_recorded,
    )


@router.get("/polar")
async def polar_webhook_get():
    return success_response(data={"ok": True}, message="polar webhook alive")


@router.post("/polar")
async def polar_webhook(
    request: Request,
    webhook_id: str | None = Header(default=None, alias="webhook-id"),
    webhook_timestamp: str | None = Header(default=None, alias="webhook-timestamp"),
    webhook_signature: str | None = Header(default=None, alias="webhook-signature"),
):
    raw = await request.body()
    logger.info(
        "[POLAR] webhook received: len=%s, webhook_id=%s, has_signature=%s",
        len(raw),
        webhook_id,
        bool(webhook_signature),
    )

    if not _verify_signature(raw, webhook_id, webhook_timestamp, webhook_signature):
        raise HTTPException(status_code=400, detail="invalid signature")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="invalid json")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid json")

    outcome = await process_polar_payload(payload, event_id=webhook_id)

    if outcome.get("retryable"):
        raise HTTPException(status_code=503, detail=f"temporary failure: {outcome.get('error_code')}")

    if outcome.get("duplicate"):
        return success_response(data=outcome, message="event already processed")

    if outcome.get("skip"):
        logger.info("[POLAR] event skipped: status=%s", outcome.get("status"))
        return success_response(data=outcome, message="event ignored")

    return success_response(data=outcome, message="polar webhook processed")
