"""
Payment event interpreter

Maps authenticated provider payloads (Stripe, RevenueCat) to a normalized
internal event. Pure mapping: no I/O, no store access. Event types this
system does not act on map to ``None`` and are acknowledged by the caller.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from core.responses import ValidationException
from core.subscription_config import BillingInterval, SubscriptionStatus

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.completed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    CUSTOMER_CREATED = "customer.created"
    ENTITLEMENT_GRANTED = "entitlement.granted"
    ENTITLEMENT_CANCELLATION = "entitlement.cancellation"
    ENTITLEMENT_UNCANCELLATION = "entitlement.uncancellation"
    ENTITLEMENT_BILLING_ISSUE = "entitlement.billing_issue"
    ENTITLEMENT_EXPIRED = "entitlement.expired"
    # 서비스 내부 발생 (사용자 해지 요청, 결제 주기 만료)
    CANCEL_REQUESTED = "subscription.cancel_requested"
    PERIOD_ELAPSED = "subscription.period_elapsed"


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    event_type: EventType
    provider: str
    occurred_at: datetime
    event_id: Optional[str] = None
    subject_user_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    # provider-side status string, mapped by the reconciliation service
    status: Optional[str] = None
    payment_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    plan: Optional[str] = None
    interval: Optional[BillingInterval] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


STRIPE_EVENT_TYPES: Dict[str, EventType] = {
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "invoice.payment_failed": EventType.INVOICE_PAYMENT_FAILED,
    "invoice.payment_succeeded": EventType.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.paid": EventType.INVOICE_PAYMENT_SUCCEEDED,
    "customer.created": EventType.CUSTOMER_CREATED,
}

REVENUECAT_EVENT_TYPES: Dict[str, EventType] = {
    "INITIAL_PURCHASE": EventType.ENTITLEMENT_GRANTED,
    "RENEWAL": EventType.ENTITLEMENT_GRANTED,
    "NON_RENEWING_PURCHASE": EventType.ENTITLEMENT_GRANTED,
    "PRODUCT_CHANGE": EventType.ENTITLEMENT_GRANTED,
    "UNCANCELLATION": EventType.ENTITLEMENT_UNCANCELLATION,
    "CANCELLATION": EventType.ENTITLEMENT_CANCELLATION,
    "BILLING_ISSUE": EventType.ENTITLEMENT_BILLING_ISSUE,
    "EXPIRATION": EventType.ENTITLEMENT_EXPIRED,
}


def _get(d: Any, *keys: str, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _id_of(value: Any) -> Optional[str]:
    """Stripe expandable field: either an id string or an object with ``id``."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        raw = value.get("id")
        return str(raw) if raw else None
    return None


def _from_epoch(value: Any, *, millis: bool = False) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value) / (1000.0 if millis else 1.0)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _to_interval(value: Any) -> Optional[BillingInterval]:
    if not isinstance(value, str):
        return None
    try:
        return BillingInterval(value.strip().lower())
    except ValueError:
        return None


def _metadata_user(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            metadata = None
    if not isinstance(metadata, dict):
        return None
    uid = metadata.get("userId") or metadata.get("user_id") or metadata.get("uid")
    return str(uid) if uid else None


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationException("webhook payload must be a JSON object")
    return payload


def interpret_stripe_event(payload: Any, *, now: Optional[datetime] = None) -> Optional[NormalizedEvent]:
    """Stripe event envelope → NormalizedEvent (None for ignored types)."""

    envelope = _require_object(payload)
    raw_type = envelope.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ValidationException("webhook payload missing event type")

    event_type = STRIPE_EVENT_TYPES.get(raw_type.strip().lower())
    if event_type is None:
        logger.info("[STRIPE] unhandled event type: %s", raw_type)
        return None

    obj = _get(envelope, "data", "object")
    if not isinstance(obj, dict):
        raise ValidationException("webhook payload missing data.object")

    occurred_at = _from_epoch(envelope.get("created")) or now or datetime.now(timezone.utc)
    base = {
        "event_type": event_type,
        "provider": "stripe",
        "occurred_at": occurred_at,
        "event_id": envelope.get("id"),
    }

    if event_type is EventType.CHECKOUT_COMPLETED:
        return NormalizedEvent(
            **base,
            subject_user_id=obj.get("client_reference_id") or _metadata_user(obj),
            external_subscription_id=_id_of(obj.get("subscription")),
            external_customer_id=_id_of(obj.get("customer")),
            payment_status=obj.get("payment_status"),
            plan=_get(obj, "metadata", "planId") or _get(obj, "metadata", "plan_id"),
            amount=_to_decimal(obj.get("amount_total")),
            currency=(obj.get("currency") or "").upper() or None,
        )

    if event_type in (EventType.SUBSCRIPTION_UPDATED, EventType.SUBSCRIPTION_DELETED):
        items = _get(obj, "items", "data", default=[]) or []
        first_price = items[0].get("price") if items and isinstance(items[0], dict) else None
        first_price = first_price if isinstance(first_price, dict) else {}
        return NormalizedEvent(
            **base,
            subject_user_id=_metadata_user(obj),
            external_subscription_id=_id_of(obj.get("id")),
            external_customer_id=_id_of(obj.get("customer")),
            status=obj.get("status"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_end=(
                _from_epoch(obj.get("current_period_end"))
                or _from_epoch(items[0].get("current_period_end") if items and isinstance(items[0], dict) else None)
            ),
            plan=(
                _get(obj, "metadata", "planId")
                or first_price.get("nickname")
                or first_price.get("id")
            ),
            interval=_to_interval(_get(first_price, "recurring", "interval")),
            amount=_to_decimal(first_price.get("unit_amount")),
            currency=(first_price.get("currency") or "").upper() or None,
        )

    if event_type in (EventType.INVOICE_PAYMENT_FAILED, EventType.INVOICE_PAYMENT_SUCCEEDED):
        return NormalizedEvent(
            **base,
            subject_user_id=_metadata_user(obj),
            external_subscription_id=_id_of(obj.get("subscription")),
            external_customer_id=_id_of(obj.get("customer")),
            status=obj.get("status"),
            current_period_end=_from_epoch(obj.get("period_end")),
            amount=_to_decimal(obj.get("amount_due")),
            currency=(obj.get("currency") or "").upper() or None,
        )

    # customer.created
    return NormalizedEvent(
        **base,
        subject_user_id=_metadata_user(obj),
        external_customer_id=_id_of(obj.get("id")),
    )


def interpret_revenuecat_event(payload: Any, *, now: Optional[datetime] = None) -> Optional[NormalizedEvent]:
    """RevenueCat webhook body → NormalizedEvent (None for ignored types)."""

    envelope = _require_object(payload)
    event = envelope.get("event")
    if not isinstance(event, dict):
        raise ValidationException("webhook payload missing event object")

    raw_type = event.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ValidationException("webhook payload missing event type")

    event_type = REVENUECAT_EVENT_TYPES.get(raw_type.strip().upper())
    if event_type is None:
        logger.info("[REVENUECAT] event ignored: %s", raw_type)
        return None

    user_id = event.get("app_user_id")
    if not user_id:
        raise ValidationException("webhook payload missing app_user_id")

    original_tx = event.get("original_transaction_id")
    occurred_at = (
        _from_epoch(event.get("event_timestamp_ms"), millis=True)
        or _from_epoch(event.get("purchased_at_ms"), millis=True)
        or now
        or datetime.now(timezone.utc)
    )
    period_type = (event.get("period_type") or "").upper()

    return NormalizedEvent(
        event_type=event_type,
        provider="revenuecat",
        occurred_at=occurred_at,
        event_id=event.get("id"),
        subject_user_id=str(user_id),
        external_subscription_id=f"rc_{original_tx}" if original_tx else None,
        status=SubscriptionStatus.TRIALING.value if period_type == "TRIAL" else None,
        current_period_end=_from_epoch(event.get("expiration_at_ms"), millis=True),
        plan=event.get("product_id"),
        amount=_to_decimal(event.get("price")),
        currency=(event.get("currency") or "").upper() or None,
    )
