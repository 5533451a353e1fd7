import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from slipcheck.core.config import get_settings
from slipcheck.core.storage import StoredFile
from slipcheck.models.slip import AuditLog, Slip
from slipcheck.schemas.slip import (
    ContinuedOverride,
    ManualReviewRequested,
    OcrError,
    SlipSource,
    SlipStatus,
    SlipUpdateRequest,
    StatusChanged,
)
from slipcheck.services import slip_lifecycle, slip_rules
from slipcheck.services.slip_validation import SlipVerdict
from slipcheck.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

ENTITY_TYPE = "slip"

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "uploaded_by_name",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_id: str,
    entity_type: str = ENTITY_TYPE,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def _to_decimal(value: Any) -> Optional[Decimal]:
    parsed = slip_rules.parse_amount(value)
    if parsed is None:
        return None
    return Decimal(str(round(parsed, 2)))


def get_slip_or_404(db: Session, slip_id: str) -> Slip:
    try:
        key = uuid.UUID(str(slip_id))
    except ValueError:
        raise HTTPException(404, "Slip not found")
    slip = db.get(Slip, key)
    if not slip:
        raise HTTPException(404, "Slip not found")
    return slip


def _append_event(slip: Slip, event, *, actor_id: Optional[str]) -> dict[str, Any]:
    stamped = event.model_copy(update={"at": event.at or _now(), "actor_id": actor_id or event.actor_id})
    payload = stamped.model_dump(mode="json")
    if slip.review_events is None:
        slip.review_events = []
    slip.review_events.append(payload)
    return payload


def create_slip(
    db: Session,
    *,
    stored: StoredFile,
    filename: Optional[str],
    content_type: Optional[str],
    source: SlipSource,
    uploaded_by: Optional[str],
    uploaded_by_name: Optional[str],
    entered_reference: Optional[str],
    expected_amount: Any,
    status: SlipStatus,
    actor_type: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
    slip_id: Optional[uuid.UUID] = None,
) -> Slip:
    slip = Slip(
        id=slip_id or uuid.uuid4(),
        filename=filename,
        file_url=stored.url,
        storage_key=stored.key,
        content_type=content_type,
        source=source.value,
        uploaded_by=uploaded_by,
        uploaded_by_name=uploaded_by_name,
        status=status.value,
        ocr_text="",
        entered_reference=(entered_reference or "").strip() or None,
        expected_amount=_to_decimal(expected_amount),
        validation_result={},
        review_events=[],
    )
    db.add(slip)
    db.flush()

    create_audit_log(
        db,
        entity_id=str(slip.id),
        action="SLIP_CREATED",
        old_value=None,
        new_value={
            "status": slip.status,
            "source": slip.source,
            "filename": slip.filename,
            "uploaded_by_name": slip.uploaded_by_name,
        },
        actor_type=actor_type,
        actor_id=uploaded_by,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("Slip created id=%s source=%s status=%s", slip.id, slip.source, slip.status)
    return slip


def check_transition(
    current: SlipStatus,
    new_status: SlipStatus,
    actor_type: str,
    *,
    review_requested: bool = False,
) -> bool:
    """Raise if the move is not allowed. Returns False for a same-status no-op."""
    if not slip_lifecycle.is_known_transition(current, new_status):
        if new_status == current:
            return False
        raise HTTPException(400, f"Invalid transition: {current.value} -> {new_status.value}")

    if not slip_lifecycle.is_allowed_transition(current, new_status, actor_type):
        raise HTTPException(403, "Forbidden")

    if slip_lifecycle.requires_review_request(current, new_status) and not review_requested:
        raise HTTPException(400, "Re-opening a slip requires a manual review request")
    return True


def apply_transition(
    db: Session,
    *,
    slip: Slip,
    new_status: SlipStatus,
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    review_requested: bool = False,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    current = SlipStatus(slip.status)
    if not check_transition(current, new_status, actor_type, review_requested=review_requested):
        return False

    old_status = slip.status
    slip.status = new_status.value
    _append_event(
        slip,
        StatusChanged(from_status=old_status, to_status=new_status.value),
        actor_id=actor_id,
    )

    create_audit_log(
        db,
        entity_id=str(slip.id),
        action="SLIP_STATUS_CHANGE",
        old_value={"status": old_status},
        new_value={"status": slip.status},
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata=metadata,
    )
    logger.info("Slip %s status %s -> %s by %s", slip.id, old_status, slip.status, actor_type)
    return True


def split_legacy_flags(bag: dict[str, Any]) -> tuple[dict[str, Any], list]:
    """Separate the old soft review flags from the evidence keys of a PATCH bag."""
    rest: dict[str, Any] = {}
    events: list = []
    for key, value in bag.items():
        if key == "requestedReview":
            if value:
                events.append(ManualReviewRequested())
        elif key == "overrideContinue":
            if value:
                events.append(ContinuedOverride())
        elif key == "error":
            if value:
                events.append(OcrError(message=str(value)))
        else:
            rest[key] = value
    return rest, events


def update_slip(
    db: Session,
    *,
    slip: Slip,
    payload: SlipUpdateRequest,
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> Slip:
    events = list(payload.events)
    merged: dict[str, Any] = {}
    if payload.validation_result is not None:
        merged, legacy_events = split_legacy_flags(payload.validation_result)
        events.extend(legacy_events)

    if payload.status is None and not events and not merged:
        raise HTTPException(400, "Nothing to update")

    review_requested = any(isinstance(event, ManualReviewRequested) for event in events)
    if payload.status is not None:
        check_transition(
            SlipStatus(slip.status),
            payload.status,
            actor_type,
            review_requested=review_requested,
        )

    appended = [_append_event(slip, event, actor_id=actor_id) for event in events]
    if merged:
        if slip.validation_result is None:
            slip.validation_result = {}
        slip.validation_result.update(merged)

    if appended or merged:
        create_audit_log(
            db,
            entity_id=str(slip.id),
            action="SLIP_REVIEW_EVENT",
            old_value=None,
            new_value={
                "events": [item["type"] for item in appended],
                "validation_result_keys": sorted(merged),
            },
            actor_type=actor_type,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    if payload.status is not None:
        apply_transition(
            db,
            slip=slip,
            new_status=payload.status,
            actor_type=actor_type,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
            review_requested=review_requested,
        )
    return slip


def record_verdict(db: Session, *, slip: Slip, verdict: SlipVerdict) -> Optional[SlipStatus]:
    """Store an automatic verdict and settle the slip. Only a ``processing`` slip accepts one."""
    if slip.status != SlipStatus.PROCESSING.value:
        logger.info("Discarding verdict for slip %s in status %s", slip.id, slip.status)
        return None

    slip.ocr_text = verdict.extracted_text or ""
    slip.ocr_confidence = verdict.confidence
    slip.detected_reference = verdict.detected_reference
    slip.detected_amount = _to_decimal(verdict.detected_amount)
    slip.reference_match = verdict.match
    slip.amount_match = verdict.amount_match
    if slip.validation_result is None:
        slip.validation_result = {}
    slip.validation_result.update({**verdict.evidence(), "processed_at": _now().isoformat()})

    new_status = slip_lifecycle.resolve_auto_status(
        is_slip=verdict.is_slip,
        match=verdict.match,
        amount_match=verdict.amount_match,
    )
    apply_transition(
        db,
        slip=slip,
        new_status=new_status,
        actor_type=slip_lifecycle.SYSTEM_ACTOR,
        actor_id=None,
        ip_address=None,
        user_agent=None,
        metadata={"classifier_rule": verdict.classifier_rule},
    )
    return new_status


def record_ocr_failure(db: Session, *, slip: Slip, message: str, fail_slip: bool = False) -> None:
    _append_event(slip, OcrError(message=message or "OCR failed"), actor_id=None)
    create_audit_log(
        db,
        entity_id=str(slip.id),
        action="SLIP_OCR_FAILED",
        old_value=None,
        new_value={"message": message},
        actor_type=slip_lifecycle.SYSTEM_ACTOR,
        actor_id=None,
        ip_address=None,
        user_agent=None,
        metadata={"source": slip.source},
    )
    if fail_slip and slip.status == SlipStatus.PROCESSING.value:
        apply_transition(
            db,
            slip=slip,
            new_status=SlipStatus.FAILED,
            actor_type=slip_lifecycle.SYSTEM_ACTOR,
            actor_id=None,
            ip_address=None,
            user_agent=None,
            metadata={"reason": "ocr_error"},
        )


def _last_event_type(slip: Slip) -> Optional[str]:
    events = slip.review_events or []
    return events[-1].get("type") if events else None


def request_revalidation(
    db: Session,
    *,
    slip: Slip,
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> bool:
    """Queue another OCR pass. Returns True when a new job must be scheduled."""
    current = SlipStatus(slip.status)
    if current == SlipStatus.PROCESSING:
        # A pass is already running, unless the last one died on an OCR error.
        if _last_event_type(slip) != "ocr_error":
            return False
    elif current != SlipStatus.PENDING:
        raise HTTPException(400, "Only pending slips can be re-validated")

    if not slip.storage_key:
        raise HTTPException(400, "Slip has no stored file")

    if current == SlipStatus.PENDING:
        apply_transition(
            db,
            slip=slip,
            new_status=SlipStatus.PROCESSING,
            actor_type=actor_type,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    create_audit_log(
        db,
        entity_id=str(slip.id),
        action="SLIP_REVALIDATION_REQUESTED",
        old_value={"status": current.value},
        new_value={"status": slip.status},
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return True


def _amount(value: Any) -> Optional[float]:
    return slip_rules.parse_amount(value)


def serialize_slip_summary(slip: Slip) -> dict[str, Any]:
    return {
        "id": str(slip.id),
        "filename": slip.filename,
        "file_url": slip.file_url,
        "source": slip.source,
        "uploaded_by": slip.uploaded_by,
        "uploaded_by_name": slip.uploaded_by_name,
        "status": slip.status,
        "created_at": slip.created_at,
    }


def serialize_slip(slip: Slip) -> dict[str, Any]:
    events = list(slip.review_events or [])
    bag = dict(slip.validation_result or {})
    errors = [event for event in events if event.get("type") == "ocr_error"]
    bag["requestedReview"] = any(event.get("type") == "manual_review_requested" for event in events)
    bag["overrideContinue"] = any(event.get("type") == "continued_override" for event in events)
    bag["error"] = errors[-1].get("message") if errors else None

    return {
        **serialize_slip_summary(slip),
        "is_final": slip.status != SlipStatus.PROCESSING.value,
        "ocr_text": slip.ocr_text or "",
        "ocr_confidence": slip.ocr_confidence,
        "entered_reference": slip.entered_reference,
        "expected_amount": _amount(slip.expected_amount),
        "detected_amount": _amount(slip.detected_amount),
        "detected_reference": slip.detected_reference,
        "match": slip.reference_match,
        "amount_match": slip.amount_match,
        "validation_result": bag,
        "review_events": events,
        "updated_at": slip.updated_at,
    }


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def list_slips(
    db: Session,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    source: Optional[SlipSource] = None,
    status: Optional[SlipStatus] = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Slip], int]:
    query = db.query(Slip)
    if date_from:
        query = query.filter(Slip.created_at >= _day_start(date_from))
    if date_to:
        # Inclusive of the whole end day.
        query = query.filter(Slip.created_at < _day_start(date_to + timedelta(days=1)))
    if source:
        query = query.filter(Slip.source == source.value)
    if status:
        query = query.filter(Slip.status == status.value)

    total = query.count()
    items = (
        query.order_by(Slip.created_at.desc(), Slip.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total
