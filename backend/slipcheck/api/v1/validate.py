import hashlib
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy.orm import sessionmaker

from slipcheck.core.auth import CurrentUser, get_current_user
from slipcheck.core.config import get_settings
from slipcheck.core.dependencies import get_session_factory
from slipcheck.core.storage import check_slip_upload, decode_data_url
from slipcheck.schemas.slip import PublicValidateRequest, SlipSource, SlipVerdictOut
from slipcheck.services import slip_rules
from slipcheck.services.ocr import OcrError
from slipcheck.services.slip_jobs import persist_verdict_job
from slipcheck.services.slip_validation import SlipValidator, SlipVerdict, get_slip_validator
from slipcheck.utils.alerting import alert_tracker
from slipcheck.utils.rate_limit import get_client_ip, get_user_agent, rate_limiter

router = APIRouter()
logger = logging.getLogger(__name__)

PUBLIC_ACTOR = "PUBLIC"


def parse_expected_amount(raw: Optional[str]) -> Optional[float]:
    """Blank means "not given"; anything else must parse."""
    if raw is None or not str(raw).strip():
        return None
    value = slip_rules.parse_amount(raw)
    if value is None:
        raise HTTPException(status_code=400, detail="Invalid expected amount")
    return value


async def _run_validation(
    validator: SlipValidator,
    content: bytes,
    *,
    content_type: Optional[str],
    reference: str,
    expected_amount: Optional[float],
) -> SlipVerdict:
    try:
        return await validator.validate(
            content,
            content_type=content_type,
            entered_reference=reference,
            expected_amount=expected_amount,
        )
    except OcrError as exc:
        logger.warning("Synchronous slip validation failed: %s", exc)
        alert_tracker.record("SLIP_OCR_FAILED", {"path": "validate-slip"})
        raise HTTPException(status_code=502, detail="OCR service unavailable") from exc


def _schedule_persist(
    background_tasks: BackgroundTasks,
    session_factory: Optional[sessionmaker],
    **job_kwargs: Any,
) -> Optional[str]:
    if session_factory is None:
        logger.warning("Slip verdict not persisted, DATABASE_URL is not configured")
        return None
    slip_id = uuid.uuid4()
    background_tasks.add_task(persist_verdict_job, session_factory=session_factory, slip_id=slip_id, **job_kwargs)
    return str(slip_id)


def _verdict_out(verdict: SlipVerdict, slip_id: Optional[str]) -> SlipVerdictOut:
    return SlipVerdictOut(**verdict.to_dict(), slip_id=slip_id)


@router.post("/validate-slip", response_model=SlipVerdictOut)
async def validate_slip(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    reference: str = Form(...),
    expected_amount: Optional[str] = Form(None),
    source: SlipSource = Form(SlipSource.POS),
    persist: bool = Form(False),
    current_user: CurrentUser = Depends(get_current_user),
    validator: SlipValidator = Depends(get_slip_validator),
    session_factory: Optional[sessionmaker] = Depends(get_session_factory),
):
    content = await file.read()
    check_slip_upload(content, file.content_type)
    expected = parse_expected_amount(expected_amount)

    verdict = await _run_validation(
        validator,
        content,
        content_type=file.content_type,
        reference=reference,
        expected_amount=expected,
    )

    slip_id = None
    if persist:
        slip_id = _schedule_persist(
            background_tasks,
            session_factory,
            verdict=verdict,
            content=content,
            filename=file.filename,
            content_type=file.content_type,
            source=source,
            entered_reference=reference,
            expected_amount=expected,
            uploaded_by=current_user.id,
            uploaded_by_name=current_user.display_name,
            actor_type=current_user.role,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    return _verdict_out(verdict, slip_id)


def _public_rate_limit_key(request: Request) -> tuple[str, str]:
    ip = get_client_ip(request) or "unknown"
    agent = get_user_agent(request) or ""
    agent_hash = hashlib.sha256(agent.encode("utf-8")).hexdigest()[:16]
    return f"public-slip:{ip}:{agent_hash}", ip


@router.post("/public/validate-slip", response_model=SlipVerdictOut)
async def validate_slip_public(
    request: Request,
    payload: PublicValidateRequest,
    background_tasks: BackgroundTasks,
    validator: SlipValidator = Depends(get_slip_validator),
    session_factory: Optional[sessionmaker] = Depends(get_session_factory),
):
    settings = get_settings()
    key, ip = _public_rate_limit_key(request)
    allowed, retry_after = rate_limiter.allow(
        key,
        settings.rate_limit_public_slip_max,
        settings.rate_limit_public_slip_window_seconds,
    )
    if not allowed:
        alert_tracker.record("RATE_LIMIT_BLOCKED", {"path": request.url.path, "ip": ip})
        raise HTTPException(
            status_code=429,
            detail="Too many slip checks, try again later",
            headers={"Retry-After": str(retry_after)},
        )

    content, content_type = decode_data_url(payload.slip)
    check_slip_upload(content, content_type)
    expected = parse_expected_amount(payload.expected_amount)

    verdict = await _run_validation(
        validator,
        content,
        content_type=content_type,
        reference=payload.reference,
        expected_amount=expected,
    )

    slip_id = None
    if payload.persist:
        slip_id = _schedule_persist(
            background_tasks,
            session_factory,
            verdict=verdict,
            content=content,
            filename=None,
            content_type=content_type,
            source=SlipSource.WEBSITE,
            entered_reference=payload.reference,
            expected_amount=expected,
            uploaded_by=None,
            uploaded_by_name=None,
            actor_type=PUBLIC_ACTOR,
            ip_address=ip,
            user_agent=get_user_agent(request),
        )
    return _verdict_out(verdict, slip_id)
