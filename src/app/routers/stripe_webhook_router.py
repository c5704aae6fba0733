"""
Stripe Webhook Router

Handles Stripe webhook events:
- Stripe-Signature verification over the raw request body (HMAC-SHA256)
- normalization into provider-independent events
- subscription state reconciliation (idempotent, ordering-safe)
- idempotency tracking via system_logs to acknowledge redeliveries early
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from core.factory import ServiceFactory
from core.interfaces import ISubscriptionStore
from core.responses import ValidationException, success_response
from services.event_interpreter import EventType, NormalizedEvent, interpret_stripe_event
from services.reconciliation_service import ReconciliationService, map_provider_status
from services.stripe_billing_client import StripeAPIError
from services.webhook_verifier import StripeSignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "stripe"])


def parse_json_body(raw: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationException("invalid json")
    if not isinstance(payload, dict):
        raise ValidationException("invalid json")
    return payload


async def _enrich_checkout_event(
    event: NormalizedEvent,
    reconciliation: ReconciliationService,
) -> NormalizedEvent:
    """체크아웃 이벤트에 구독 세부 정보(체험 여부, 기간 종료)를 보강"""

    billing = reconciliation.billing_client
    if billing is None or event.event_type != EventType.CHECKOUT_COMPLETED or not event.external_subscription_id:
        return event

    try:
        subscription = await billing.retrieve_subscription(event.external_subscription_id)
    except StripeAPIError as e:
        # 보강 실패 시 세션 정보만으로 반영 (이후 subscription.updated 가 나머지를 채운다)
        logger.warning(
            "[STRIPE] subscription lookup for checkout enrichment failed: subscription=%s code=%s",
            event.external_subscription_id,
            e.code,
        )
        return event

    details = interpret_stripe_event(
        {
            "id": None,
            "type": "customer.subscription.updated",
            "created": int(event.occurred_at.timestamp()),
            "data": {"object": subscription},
        }
    )
    if details is None:
        return event

    status = map_provider_status(details.status)
    return NormalizedEvent(
        event_type=event.event_type,
        provider=event.provider,
        occurred_at=event.occurred_at,
        event_id=event.event_id,
        subject_user_id=event.subject_user_id,
        external_subscription_id=event.external_subscription_id,
        external_customer_id=event.external_customer_id or details.external_customer_id,
        status=status.value if status else event.status,
        payment_status=event.payment_status,
        current_period_end=details.current_period_end or event.current_period_end,
        plan=details.plan or event.plan,
        interval=details.interval or event.interval,
        amount=event.amount,
        currency=event.currency,
    )


async def process_stripe_payload(
    payload: Dict[str, Any],
    reconciliation: ReconciliationService,
    store: ISubscriptionStore,
    *,
    allow_duplicate: bool = False,
) -> Dict[str, Any]:
    """인증된 Stripe 이벤트를 처리하고 결과를 반환"""

    event_id: Optional[str] = payload.get("id")
    event = interpret_stripe_event(payload)
    if event is None:
        logger.info("[STRIPE] event ignored: type=%s id=%s", payload.get("type"), event_id)
        return {"event_id": event_id, "status": "skipped", "skip": True, "duplicate": False}

    if event_id and not allow_duplicate:
        if await store.has_processed_webhook_event("stripe", event_id):
            logger.info("[STRIPE] duplicate event ignored: %s", event_id)
            return {"event_id": event_id, "status": "duplicate", "skip": False, "duplicate": True}

    logger.info(
        "[STRIPE] event=%s id=%s uid=%s subscription=%s",
        event.event_type.value,
        event_id,
        event.subject_user_id,
        event.external_subscription_id,
    )

    event = await _enrich_checkout_event(event, reconciliation)
    result = await reconciliation.apply_event(event)

    log_recorded = False
    if event_id:
        log_recorded = await store.record_webhook_event(
            "stripe",
            event_id,
            "processed",
            {"event_type": payload.get("type"), **result.to_dict()},
        )

    return {
        "event_id": event_id,
        "status": result.outcome.value,
        "skip": False,
        "duplicate": False,
        "result": result.to_dict(),
        "log_recorded": log_recorded,
    }


@router.get("/stripe")
async def stripe_webhook_get():
    return success_response(data={"ok": True}, message="stripe webhook alive")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    verifier: StripeSignatureVerifier = Depends(ServiceFactory.get_stripe_verifier),
    reconciliation: ReconciliationService = Depends(ServiceFactory.get_reconciliation_service),
    store: ISubscriptionStore = Depends(ServiceFactory.get_subscription_store),
):
    raw = await request.body()
    logger.info(
        "[STRIPE] webhook received: len=%s, has_signature=%s",
        len(raw),
        bool(stripe_signature),
    )

    verifier.verify(raw, stripe_signature)
    payload = parse_json_body(raw)

    outcome = await process_stripe_payload(payload, reconciliation, store)

    if outcome.get("skip"):
        return success_response(data={"received": True, "skipped": True}, message="event ignored")

    if outcome.get("duplicate"):
        return success_response(data={"received": True, **outcome}, message="event already processed")

    return success_response(data={"received": True, **outcome}, message="stripe webhook processed")
