import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from sqlalchemy.orm import Session, sessionmaker

from slipcheck.api.v1.validate import parse_expected_amount
from slipcheck.core.auth import CurrentUser, get_current_user, require_staff
from slipcheck.core.config import get_settings
from slipcheck.core.dependencies import get_db, get_session_factory
from slipcheck.core.storage import check_slip_upload, read_slip_file, save_slip_file
from slipcheck.schemas.slip import (
    SlipCreateResponse,
    SlipListResponse,
    SlipOut,
    SlipSource,
    SlipStatus,
    SlipSummaryOut,
    SlipUpdateRequest,
)
from slipcheck.services import slip_lifecycle
from slipcheck.services.slip_jobs import process_slip_job
from slipcheck.services.slip_service import (
    create_slip,
    get_slip_or_404,
    list_slips,
    request_revalidation,
    serialize_slip,
    serialize_slip_summary,
    update_slip,
)
from slipcheck.services.slip_validation import SlipValidator, get_slip_validator
from slipcheck.utils.rate_limit import get_client_ip, get_user_agent

router = APIRouter()
logger = logging.getLogger(__name__)

MIN_PER_PAGE = 10
MAX_PER_PAGE = 100


def _schedule_processing(
    background_tasks: BackgroundTasks,
    session_factory: Optional[sessionmaker],
    validator: SlipValidator,
    slip_id: str,
) -> None:
    if session_factory is None:
        logger.warning("Slip %s left in processing, no session factory for background work", slip_id)
        return
    background_tasks.add_task(process_slip_job, slip_id, session_factory=session_factory, validator=validator)


@router.post("/slips", response_model=SlipCreateResponse, status_code=202)
async def upload_slip(
    request: Request,
    background_tasks: BackgroundTasks,
    slip: UploadFile = File(...),
    transaction_id: Optional[str] = Form(None),
    expected_amount: Optional[str] = Form(None),
    source: SlipSource = Form(SlipSource.POS),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    session_factory: Optional[sessionmaker] = Depends(get_session_factory),
    validator: SlipValidator = Depends(get_slip_validator),
):
    settings = get_settings()
    content = await slip.read()
    check_slip_upload(content, slip.content_type)
    expected = parse_expected_amount(expected_amount)

    stored = save_slip_file(filename=slip.filename, content=content, content_type=slip.content_type)
    status = slip_lifecycle.initial_status(ocr_now=not settings.slip_defer_ocr)
    record = create_slip(
        db,
        stored=stored,
        filename=slip.filename,
        content_type=slip.content_type,
        source=source,
        uploaded_by=current_user.id,
        uploaded_by_name=current_user.display_name,
        entered_reference=transaction_id,
        expected_amount=expected,
        status=status,
        actor_type=current_user.role,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()

    if status == SlipStatus.PROCESSING:
        _schedule_processing(background_tasks, session_factory, validator, str(record.id))
    return SlipCreateResponse(id=str(record.id), status=record.status, file_url=record.file_url)


@router.get("/slips", response_model=SlipListResponse)
async def get_slips(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    source: Optional[SlipSource] = Query(None),
    status: Optional[SlipStatus] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20),
    current_user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to")
    per_page = max(MIN_PER_PAGE, min(MAX_PER_PAGE, per_page))

    items, total = list_slips(
        db,
        date_from=date_from,
        date_to=date_to,
        source=source,
        status=status,
        page=page,
        per_page=per_page,
    )
    return SlipListResponse(
        items=[SlipSummaryOut(**serialize_slip_summary(item)) for item in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/slips/{slip_id}", response_model=SlipOut)
async def get_slip(
    slip_id: str,
    current_user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return SlipOut(**serialize_slip(get_slip_or_404(db, slip_id)))


@router.patch("/slips/{slip_id}", response_model=SlipOut)
async def patch_slip(
    slip_id: str,
    payload: SlipUpdateRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    slip = get_slip_or_404(db, slip_id)
    update_slip(
        db,
        slip=slip,
        payload=payload,
        actor_type=current_user.role,
        actor_id=current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    db.refresh(slip)
    return SlipOut(**serialize_slip(slip))


@router.post("/slips/{slip_id}/revalidate", response_model=SlipCreateResponse, status_code=202)
async def revalidate_slip(
    slip_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
    session_factory: Optional[sessionmaker] = Depends(get_session_factory),
    validator: SlipValidator = Depends(get_slip_validator),
):
    slip = get_slip_or_404(db, slip_id)
    scheduled = request_revalidation(
        db,
        slip=slip,
        actor_type=current_user.role,
        actor_id=current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()

    if scheduled:
        _schedule_processing(background_tasks, session_factory, validator, str(slip.id))
    return SlipCreateResponse(id=str(slip.id), status=slip.status, file_url=slip.file_url)


@router.get("/slips/{slip_id}/file")
async def get_slip_file(
    slip_id: str,
    current_user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    slip = get_slip_or_404(db, slip_id)
    if not slip.storage_key:
        raise HTTPException(status_code=404, detail="Slip file not found")
    content = read_slip_file(slip.storage_key)
    return Response(content=content, media_type=slip.content_type or "application/octet-stream")
