import uuid

import pytest

from slipcheck.core.storage import save_slip_file
from slipcheck.models.slip import Slip
from slipcheck.schemas.slip import SlipSource, SlipStatus
from slipcheck.services import slip_service
from slipcheck.services.ocr import MockOcrProvider, OcrError, OcrProvider
from slipcheck.services.slip_jobs import persist_verdict_job, process_slip_job
from slipcheck.services.slip_validation import SlipValidator
from slipcheck.utils.alerting import alert_tracker

SLIP_TEXT = "Bank Transfer\nReference: TXN998877\nAmount: MVR 1,250.00"


class _DownProvider(OcrProvider):
    name = "down"

    async def extract(self, content, *, content_type=None):
        raise OcrError("OCR service call failed: ConnectError")


def _validator(provider=None):
    return SlipValidator(provider or MockOcrProvider(confidence=85), min_confidence=60, amount_tolerance=1.0)


def _stored_slip(session_factory, *, text=SLIP_TEXT, expected="1250", status=SlipStatus.PROCESSING):
    stored = save_slip_file(filename="slip.png", content=text.encode("utf-8"), content_type="image/png")
    db = session_factory()
    try:
        slip = slip_service.create_slip(
            db,
            stored=stored,
            filename="slip.png",
            content_type="image/png",
            source=SlipSource.POS,
            uploaded_by="cashier-1",
            uploaded_by_name=None,
            entered_reference="998877",
            expected_amount=expected,
            status=status,
            actor_type="CASHIER",
            ip_address=None,
            user_agent=None,
        )
        db.commit()
        return str(slip.id)
    finally:
        db.close()


def _load(session_factory, slip_id):
    db = session_factory()
    try:
        return db.get(Slip, uuid.UUID(slip_id))
    finally:
        db.close()


@pytest.mark.asyncio
async def test_process_job_validates_matching_slip(session_factory, storage_dir):
    slip_id = _stored_slip(session_factory)
    status = await process_slip_job(slip_id, session_factory=session_factory, validator=_validator())
    assert status == "validated"

    slip = _load(session_factory, slip_id)
    assert slip.status == "validated"
    assert slip.detected_reference == "TXN998877"
    assert slip.ocr_confidence == 85


@pytest.mark.asyncio
async def test_process_job_sends_undetermined_slip_to_review(session_factory, storage_dir):
    slip_id = _stored_slip(session_factory, expected="10")
    assert await process_slip_job(slip_id, session_factory=session_factory, validator=_validator()) == "pending"


@pytest.mark.asyncio
async def test_process_job_fails_non_slip(session_factory, storage_dir):
    slip_id = _stored_slip(session_factory, text="Grocery receipt\nThank you for shopping")
    assert await process_slip_job(slip_id, session_factory=session_factory, validator=_validator()) == "failed"


@pytest.mark.asyncio
async def test_process_job_ocr_failure_keeps_processing(session_factory, storage_dir):
    slip_id = _stored_slip(session_factory)
    status = await process_slip_job(slip_id, session_factory=session_factory, validator=_validator(_DownProvider()))
    assert status == "processing"

    slip = _load(session_factory, slip_id)
    assert slip.review_events[-1]["type"] == "ocr_error"
    assert "ConnectError" in slip.review_events[-1]["message"]


@pytest.mark.asyncio
async def test_process_job_ocr_failure_can_fail_slip(session_factory, storage_dir, monkeypatch):
    monkeypatch.setenv("SLIP_FAIL_ON_OCR_ERROR", "true")
    slip_id = _stored_slip(session_factory)
    status = await process_slip_job(slip_id, session_factory=session_factory, validator=_validator(_DownProvider()))
    assert status == "failed"


@pytest.mark.asyncio
async def test_process_job_skips_settled_slip(session_factory, storage_dir):
    slip_id = _stored_slip(session_factory, status=SlipStatus.PENDING)
    assert await process_slip_job(slip_id, session_factory=session_factory, validator=_validator()) == "pending"
    assert _load(session_factory, slip_id).ocr_text == ""


@pytest.mark.asyncio
async def test_process_job_unknown_slip(session_factory, storage_dir):
    assert await process_slip_job(str(uuid.uuid4()), session_factory=session_factory, validator=_validator()) is None


@pytest.mark.asyncio
async def test_persist_job_stores_verdict(session_factory, storage_dir):
    verdict = await _validator().validate(SLIP_TEXT.encode(), entered_reference="998877", expected_amount=1250)
    slip_id = uuid.uuid4()
    result = await persist_verdict_job(
        verdict=verdict,
        content=SLIP_TEXT.encode(),
        filename=None,
        content_type="image/png",
        source=SlipSource.WEBSITE,
        entered_reference="998877",
        expected_amount=1250,
        uploaded_by=None,
        uploaded_by_name=None,
        actor_type="PUBLIC",
        ip_address="203.0.113.9",
        user_agent="pytest",
        session_factory=session_factory,
        slip_id=slip_id,
    )
    assert result == str(slip_id)
    slip = _load(session_factory, result)
    assert slip.source == "website"
    assert slip.status == "validated"


@pytest.mark.asyncio
async def test_persist_job_retries_with_backoff_then_alerts(session_factory, storage_dir, monkeypatch):
    verdict = await _validator().validate(SLIP_TEXT.encode(), entered_reference="998877")
    calls = {"n": 0}

    def broken_create_slip(*args, **kwargs):
        calls["n"] += 1
        raise RuntimeError("database is locked")

    monkeypatch.setattr("slipcheck.services.slip_jobs.create_slip", broken_create_slip)
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    recorded = []
    monkeypatch.setattr(alert_tracker, "record", lambda action, metadata=None: recorded.append(action))

    result = await persist_verdict_job(
        verdict=verdict,
        content=SLIP_TEXT.encode(),
        filename="slip.png",
        content_type="image/png",
        source=SlipSource.POS,
        entered_reference="998877",
        expected_amount=None,
        uploaded_by="cashier-1",
        uploaded_by_name=None,
        actor_type="CASHIER",
        ip_address=None,
        user_agent=None,
        session_factory=session_factory,
        max_attempts=3,
        base_delay=0.25,
        sleep=fake_sleep,
    )
    assert result is None
    assert calls["n"] == 3
    assert delays == [0.25, 0.5]
    assert recorded == ["SLIP_PERSIST_FAILED"]
