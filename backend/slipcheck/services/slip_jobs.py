"""Background work scheduled by the slip endpoints.

Both jobs open their own session from the factory they are given: they run
after the response has been sent, when the request session is already closed.
Failures are logged, never raised back to the caller.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy.orm import sessionmaker

from slipcheck.core.config import get_settings
from slipcheck.core.storage import StoredFile, read_slip_file, save_slip_file
from slipcheck.models.slip import Slip
from slipcheck.schemas.slip import SlipSource, SlipStatus
from slipcheck.services.ocr import OcrError
from slipcheck.services.slip_service import create_slip, record_ocr_failure, record_verdict
from slipcheck.services.slip_validation import SlipValidator, SlipVerdict
from slipcheck.utils.alerting import alert_tracker
from slipcheck.utils.retry import compute_backoff

logger = logging.getLogger(__name__)


async def process_slip_job(
    slip_id: str,
    *,
    session_factory: sessionmaker,
    validator: Optional[SlipValidator] = None,
) -> Optional[str]:
    """Run one OCR pass for a stored slip and settle it. Returns the resulting status."""
    settings = get_settings()
    validator = validator or SlipValidator()
    db = session_factory()
    try:
        slip = db.get(Slip, uuid.UUID(str(slip_id)))
        if slip is None:
            logger.warning("Slip job skipped, slip %s not found", slip_id)
            return None
        if slip.status != SlipStatus.PROCESSING.value:
            logger.info("Slip job skipped, slip %s is %s", slip_id, slip.status)
            return slip.status

        try:
            content = read_slip_file(slip.storage_key)
            verdict = await validator.validate(
                content,
                content_type=slip.content_type,
                entered_reference=slip.entered_reference,
                expected_amount=slip.expected_amount,
            )
        except (OcrError, HTTPException) as exc:
            message = str(exc) if isinstance(exc, OcrError) else f"Slip file unavailable: {exc.detail}"
            logger.warning("OCR pass failed for slip %s: %s", slip_id, message)
            record_ocr_failure(db, slip=slip, message=message, fail_slip=settings.slip_fail_on_ocr_error)
            db.commit()
            return slip.status

        # A staff decision may have landed while OCR was running.
        db.refresh(slip)
        new_status = record_verdict(db, slip=slip, verdict=verdict)
        db.commit()
        logger.info("Slip job finished slip=%s status=%s", slip_id, slip.status)
        return new_status.value if new_status else slip.status
    except Exception:
        db.rollback()
        logger.exception("Slip job failed slip=%s", slip_id)
        return None
    finally:
        db.close()


async def persist_verdict_job(
    *,
    verdict: SlipVerdict,
    content: bytes,
    filename: Optional[str],
    content_type: Optional[str],
    source: SlipSource,
    entered_reference: Optional[str],
    expected_amount: Any,
    uploaded_by: Optional[str],
    uploaded_by_name: Optional[str],
    actor_type: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
    session_factory: sessionmaker,
    slip_id: Optional[uuid.UUID] = None,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[str]:
    """Record an instant verdict as a slip, retrying with backoff. Returns the new slip id."""
    settings = get_settings()
    attempts = max(1, max_attempts or settings.slip_persist_max_attempts)
    delay = settings.slip_persist_retry_base_delay_seconds if base_delay is None else base_delay

    stored: Optional[StoredFile] = None
    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            if stored is None:
                stored = save_slip_file(filename=filename, content=content, content_type=content_type)
            slip = create_slip(
                db,
                stored=stored,
                filename=filename,
                content_type=content_type,
                source=source,
                uploaded_by=uploaded_by,
                uploaded_by_name=uploaded_by_name,
                entered_reference=entered_reference,
                expected_amount=expected_amount,
                status=SlipStatus.PROCESSING,
                actor_type=actor_type,
                ip_address=ip_address,
                user_agent=user_agent,
                slip_id=slip_id,
            )
            record_verdict(db, slip=slip, verdict=verdict)
            db.commit()
            logger.info("Verdict persisted slip=%s status=%s attempt=%s", slip.id, slip.status, attempt)
            return str(slip.id)
        except Exception:
            db.rollback()
            if attempt >= attempts:
                logger.exception("Verdict persistence gave up after %s attempts", attempts)
                alert_tracker.record("SLIP_PERSIST_FAILED", {"source": source.value, "attempts": attempts})
                return None
            wait = compute_backoff(attempt, delay)
            logger.warning(
                "Verdict persistence failed, attempt %s/%s, retry in %.2fs",
                attempt,
                attempts,
                wait,
                exc_info=True,
            )
        finally:
            db.close()
        await sleep(wait)
    return None
