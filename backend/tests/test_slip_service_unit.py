"""
Unit tests for slip_service: persistence, lifecycle enforcement and the audit trail.

Covers:
  - _redact_pii: nested masking
  - apply_transition: happy path, 400 on unknown moves, 403 on wrong actor, re-open guard
  - update_slip: event append, merge-only validation_result, legacy flag conversion
  - record_verdict / record_ocr_failure: automatic settlement, stale verdicts discarded
  - request_revalidation: pending only, idempotent while processing
  - serialize_slip / list_slips
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from slipcheck.core.storage import StoredFile
from slipcheck.models.slip import AuditLog, Slip
from slipcheck.schemas.slip import ContinuedOverride, ManualReviewRequested, SlipSource, SlipStatus, SlipUpdateRequest
from slipcheck.services import slip_service
from slipcheck.services.ocr import OcrResult
from slipcheck.services.slip_lifecycle import SYSTEM_ACTOR
from slipcheck.services.slip_validation import evaluate_ocr_result

SLIP_TEXT = "Bank Transfer\nReference: TXN998877\nAmount: MVR 1,250.00"


def _make_slip(db, *, status=SlipStatus.PROCESSING, reference="998877", expected="1250", source=SlipSource.POS):
    slip = slip_service.create_slip(
        db,
        stored=StoredFile(key="slips/2026/10/18/abc.png", url="/uploads/slips/2026/10/18/abc.png"),
        filename="abc.png",
        content_type="image/png",
        source=source,
        uploaded_by="cashier-1",
        uploaded_by_name="Aishath",
        entered_reference=reference,
        expected_amount=expected,
        status=status,
        actor_type="CASHIER",
        ip_address="127.0.0.1",
        user_agent="pytest",
    )
    db.commit()
    return slip


def _verdict(text=SLIP_TEXT, confidence=85, reference="998877", expected="1250"):
    return evaluate_ocr_result(
        OcrResult(text=text, confidence=confidence, provider="test"),
        entered_reference=reference,
        expected_amount=expected,
    )


def _actions(db, slip):
    rows = db.query(AuditLog).filter(AuditLog.entity_id == slip.id).order_by(AuditLog.timestamp).all()
    return [row.action for row in rows]


def _transition(db, slip, new_status, actor="ADMIN", **kwargs):
    return slip_service.apply_transition(
        db,
        slip=slip,
        new_status=new_status,
        actor_type=actor,
        actor_id="staff-1",
        ip_address=None,
        user_agent=None,
        **kwargs,
    )


# ── PII redaction ────────────────────────────────────────────────────


def test_redact_pii_nested():
    value = {"email": "a@b.c", "nested": [{"phone": "+960 7777777", "ok": 1}], "status": "pending"}
    redacted = slip_service._redact_pii(value, {"email", "phone"})
    assert redacted == {"email": "[REDACTED]", "nested": [{"phone": "[REDACTED]", "ok": 1}], "status": "pending"}


def test_create_slip_audit_redacts_uploader_name(db_session):
    slip = _make_slip(db_session)
    log = db_session.query(AuditLog).filter(AuditLog.action == "SLIP_CREATED").one()
    assert log.entity_type == "slip"
    assert log.new_value["uploaded_by_name"] == "[REDACTED]"
    assert slip.expected_amount is not None
    assert float(slip.expected_amount) == 1250.0


# ── Transitions ──────────────────────────────────────────────────────


def test_apply_transition_records_event_and_audit(db_session):
    slip = _make_slip(db_session)
    assert _transition(db_session, slip, SlipStatus.VALIDATED, actor="CASHIER") is True
    db_session.commit()

    assert slip.status == "validated"
    last = slip.review_events[-1]
    assert last["type"] == "status_changed"
    assert (last["from_status"], last["to_status"]) == ("processing", "validated")
    assert last["actor_id"] == "staff-1"
    assert "SLIP_STATUS_CHANGE" in _actions(db_session, slip)


def test_apply_transition_rejects_unknown_move(db_session):
    slip = _make_slip(db_session, status=SlipStatus.PENDING)
    _transition(db_session, slip, SlipStatus.VALIDATED)
    with pytest.raises(HTTPException) as exc:
        _transition(db_session, slip, SlipStatus.FAILED)
    assert exc.value.status_code == 400


def test_apply_transition_rejects_wrong_actor(db_session):
    slip = _make_slip(db_session, status=SlipStatus.PENDING)
    with pytest.raises(HTTPException) as exc:
        _transition(db_session, slip, SlipStatus.VALIDATED, actor=SYSTEM_ACTOR)
    assert exc.value.status_code == 403

    processing = _make_slip(db_session)
    with pytest.raises(HTTPException) as exc:
        _transition(db_session, processing, SlipStatus.PENDING, actor="ADMIN")
    assert exc.value.status_code == 403


def test_same_status_is_a_noop(db_session):
    slip = _make_slip(db_session)
    assert _transition(db_session, slip, SlipStatus.PROCESSING) is False
    assert slip.review_events == []


def test_reopen_requires_review_request(db_session):
    slip = _make_slip(db_session, status=SlipStatus.PENDING)
    _transition(db_session, slip, SlipStatus.FAILED)

    with pytest.raises(HTTPException) as exc:
        _transition(db_session, slip, SlipStatus.PENDING)
    assert exc.value.status_code == 400

    assert _transition(db_session, slip, SlipStatus.PENDING, review_requested=True) is True
    assert slip.status == "pending"


# ── Staff updates ────────────────────────────────────────────────────


def _update(db, slip, **payload):
    return slip_service.update_slip(
        db,
        slip=slip,
        payload=SlipUpdateRequest(**payload),
        actor_type="MANAGER",
        actor_id="manager-1",
        ip_address=None,
        user_agent=None,
    )


def test_update_merges_validation_result(db_session):
    slip = _make_slip(db_session)
    slip.validation_result.update({"is_slip": True, "classifier_rule": "slip_vocabulary"})
    db_session.commit()

    _update(db_session, slip, validation_result={"note": "checked with bank"})
    db_session.commit()
    db_session.refresh(slip)

    assert slip.validation_result["is_slip"] is True
    assert slip.validation_result["classifier_rule"] == "slip_vocabulary"
    assert slip.validation_result["note"] == "checked with bank"


def test_update_converts_legacy_flags_to_events(db_session):
    slip = _make_slip(db_session)
    _update(
        db_session,
        slip,
        validation_result={"requestedReview": True, "overrideContinue": True, "error": "OCR timeout", "x": 1},
    )
    db_session.commit()
    db_session.refresh(slip)

    types = [event["type"] for event in slip.review_events]
    assert types == ["manual_review_requested", "continued_override", "ocr_error"]
    assert "requestedReview" not in slip.validation_result
    assert slip.validation_result["x"] == 1
    assert "SLIP_REVIEW_EVENT" in _actions(db_session, slip)


def test_update_events_are_append_only(db_session):
    slip = _make_slip(db_session)
    _update(db_session, slip, events=[ContinuedOverride(note="customer insisted")])
    db_session.commit()
    _update(db_session, slip, events=[ManualReviewRequested()])
    db_session.commit()
    db_session.refresh(slip)

    assert [e["type"] for e in slip.review_events] == ["continued_override", "manual_review_requested"]
    assert slip.review_events[0]["note"] == "customer insisted"
    assert slip.review_events[0]["actor_id"] == "manager-1"


def test_update_reopen_with_review_request(db_session):
    slip = _make_slip(db_session)
    _update(db_session, slip, status="validated")
    _update(db_session, slip, status="pending", events=[{"type": "manual_review_requested", "note": "wrong amount"}])
    db_session.commit()

    assert slip.status == "pending"
    types = [e["type"] for e in slip.review_events]
    assert types[-2:] == ["manual_review_requested", "status_changed"]


def test_update_rejected_transition_appends_nothing(db_session):
    slip = _make_slip(db_session)
    _update(db_session, slip, status="failed")
    before = len(slip.review_events)
    with pytest.raises(HTTPException) as exc:
        _update(db_session, slip, status="pending", events=[{"type": "continued_override"}])
    assert exc.value.status_code == 400
    assert len(slip.review_events) == before


def test_update_with_nothing_is_rejected(db_session):
    slip = _make_slip(db_session)
    with pytest.raises(HTTPException) as exc:
        _update(db_session, slip)
    assert exc.value.status_code == 400


# ── Automatic verdicts ───────────────────────────────────────────────


def test_record_verdict_validates_matching_slip(db_session):
    slip = _make_slip(db_session)
    assert slip_service.record_verdict(db_session, slip=slip, verdict=_verdict()) == SlipStatus.VALIDATED
    db_session.commit()

    assert slip.status == "validated"
    assert slip.ocr_text == SLIP_TEXT
    assert slip.detected_reference == "TXN998877"
    assert float(slip.detected_amount) == 1250.0
    assert slip.reference_match is True
    assert slip.amount_match is True
    assert slip.validation_result["classifier_rule"] == "slip_vocabulary"
    assert "processed_at" in slip.validation_result


def test_record_verdict_routes_amount_mismatch_to_review(db_session):
    slip = _make_slip(db_session, expected="900")
    status = slip_service.record_verdict(db_session, slip=slip, verdict=_verdict(expected="900"))
    assert status == SlipStatus.PENDING
    assert slip.amount_match is False


def test_record_verdict_fails_non_slip(db_session):
    slip = _make_slip(db_session)
    verdict = _verdict(text="Grocery receipt\nThank you for shopping", confidence=90)
    assert slip_service.record_verdict(db_session, slip=slip, verdict=verdict) == SlipStatus.FAILED


def test_record_verdict_discarded_once_staff_decided(db_session):
    slip = _make_slip(db_session)
    _transition(db_session, slip, SlipStatus.FAILED)
    assert slip_service.record_verdict(db_session, slip=slip, verdict=_verdict()) is None
    assert slip.status == "failed"
    assert slip.ocr_text == ""


def test_record_ocr_failure_keeps_processing_by_default(db_session):
    slip = _make_slip(db_session)
    slip_service.record_ocr_failure(db_session, slip=slip, message="OCR service call failed: ConnectError")
    db_session.commit()
    assert slip.status == "processing"
    assert slip.review_events[-1]["type"] == "ocr_error"
    assert "SLIP_OCR_FAILED" in _actions(db_session, slip)


def test_record_ocr_failure_can_fail_the_slip(db_session):
    slip = _make_slip(db_session)
    slip_service.record_ocr_failure(db_session, slip=slip, message="boom", fail_slip=True)
    assert slip.status == "failed"


# ── Re-validation ────────────────────────────────────────────────────


def _revalidate(db, slip):
    return slip_service.request_revalidation(
        db,
        slip=slip,
        actor_type="ADMIN",
        actor_id="admin-1",
        ip_address=None,
        user_agent=None,
    )


def test_revalidation_moves_pending_to_processing(db_session):
    slip = _make_slip(db_session, status=SlipStatus.PENDING)
    assert _revalidate(db_session, slip) is True
    assert slip.status == "processing"
    db_session.commit()
    assert "SLIP_REVALIDATION_REQUESTED" in _actions(db_session, slip)


def test_revalidation_while_processing_is_idempotent(db_session):
    slip = _make_slip(db_session)
    assert _revalidate(db_session, slip) is False


def test_revalidation_retries_after_ocr_error(db_session):
    slip = _make_slip(db_session)
    slip_service.record_ocr_failure(db_session, slip=slip, message="timeout")
    assert _revalidate(db_session, slip) is True
    assert slip.status == "processing"


def test_revalidation_of_settled_slip_is_rejected(db_session):
    slip = _make_slip(db_session)
    _transition(db_session, slip, SlipStatus.VALIDATED)
    with pytest.raises(HTTPException) as exc:
        _revalidate(db_session, slip)
    assert exc.value.status_code == 400


# ── Read side ────────────────────────────────────────────────────────


def test_serialize_slip_exposes_derived_flags(db_session):
    slip = _make_slip(db_session)
    data = slip_service.serialize_slip(slip)
    assert data["is_final"] is False
    assert data["validation_result"]["requestedReview"] is False
    assert data["validation_result"]["error"] is None

    _update(db_session, slip, events=[ManualReviewRequested()], validation_result={"error": "bad scan"})
    data = slip_service.serialize_slip(slip)
    assert data["validation_result"]["requestedReview"] is True
    assert data["validation_result"]["error"] == "bad scan"
    assert data["expected_amount"] == 1250.0


def test_list_slips_filters_and_paginates(db_session):
    for _ in range(3):
        _make_slip(db_session, source=SlipSource.POS)
    web = _make_slip(db_session, source=SlipSource.WEBSITE, status=SlipStatus.PENDING)

    old = _make_slip(db_session)
    old.created_at = datetime.now(timezone.utc) - timedelta(days=10)
    db_session.commit()

    items, total = slip_service.list_slips(db_session, source=SlipSource.WEBSITE)
    assert total == 1
    assert items[0].id == web.id

    items, total = slip_service.list_slips(db_session, status=SlipStatus.PROCESSING, page=1, per_page=2)
    assert total == 4
    assert len(items) == 2

    today = datetime.now(timezone.utc).date()
    items, total = slip_service.list_slips(db_session, date_from=today - timedelta(days=1), date_to=today)
    assert total == 4
    assert all(item.id != old.id for item in items)

    items, total = slip_service.list_slips(db_session, date_to=date(2000, 1, 1))
    assert total == 0


def test_get_slip_or_404(db_session):
    with pytest.raises(HTTPException) as exc:
        slip_service.get_slip_or_404(db_session, "not-a-uuid")
    assert exc.value.status_code == 404

    slip = _make_slip(db_session)
    assert slip_service.get_slip_or_404(db_session, str(slip.id)) is slip
    assert isinstance(slip, Slip)
