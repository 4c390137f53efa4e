from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, Request

from attendance_ot.dependencies import get_lifecycle, get_scheduler
from attendance_ot.errors import ValidationError
from attendance_ot.schemas import (
    OTActiveSessionResponse,
    OTEndRequest,
    OTEndResponse,
    OTReviewRequest,
    OTSessionRead,
    OTStartRequest,
    OTStatusResponse,
    ReconciliationRunRead,
)
from attendance_ot.security import Principal, require_admin, require_user
from attendance_ot.services.ot_sessions import OTSessionLifecycle, SessionEvidence
from attendance_ot.services.reconciliation import ReconciliationScheduler
from attendance_ot.services.time_utils import local_date, utcnow

router = APIRouter(prefix="/api/ot", tags=["ot"])

PENDING_REVIEW_DEFAULT_DAYS = 31


def _evidence(payload: OTStartRequest | OTEndRequest) -> SessionEvidence:
    return SessionEvidence(
        image_url=payload.image_url,
        latitude=payload.latitude,
        longitude=payload.longitude,
        address=payload.address,
    )


@router.post("/sessions/start", response_model=OTSessionRead, status_code=201)
def start_session(
    payload: OTStartRequest,
    request: Request,
    principal: Principal = Depends(require_user),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> OTSessionRead:
    session = lifecycle.start_session(
        principal.user_id,
        ot_type=payload.ot_type,
        evidence=_evidence(payload),
        reason=payload.reason,
    )
    request.state.event_id = session.session_id
    return OTSessionRead.model_validate(session)


@router.post("/sessions/{session_id}/end", response_model=OTEndResponse)
def end_session(
    session_id: str,
    payload: OTEndRequest,
    request: Request,
    principal: Principal = Depends(require_user),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> OTEndResponse:
    result = lifecycle.end_session(principal.user_id, session_id, evidence=_evidence(payload))
    request.state.event_id = session_id
    return OTEndResponse(
        session=OTSessionRead.model_validate(result.session),
        day_ot_hours=result.day_ot_hours,
        exceeds_daily_cap=result.exceeds_daily_cap,
        already_ended=result.already_ended,
    )


@router.get("/sessions/active", response_model=OTActiveSessionResponse)
def active_session(
    principal: Principal = Depends(require_user),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> OTActiveSessionResponse:
    session = lifecycle.get_active_session(principal.user_id)
    return OTActiveSessionResponse(session=OTSessionRead.model_validate(session) if session is not None else None)


@router.get("/status", response_model=OTStatusResponse)
def ot_status(
    principal: Principal = Depends(require_user),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> OTStatusResponse:
    return OTStatusResponse.model_validate(lifecycle.ot_status(principal.user_id))


@router.get("/sessions/pending", response_model=list[OTSessionRead])
def pending_sessions(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    _: Principal = Depends(require_admin),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> list[OTSessionRead]:
    end = end_date or local_date(utcnow())
    start = start_date or end - timedelta(days=PENDING_REVIEW_DEFAULT_DAYS)
    if end < start:
        raise ValidationError("end_date must not be before start_date.", code="INVALID_DATE_RANGE")
    return [OTSessionRead.model_validate(item) for item in lifecycle.list_pending_review(start, end)]


@router.post("/sessions/{session_id}/review", response_model=OTSessionRead)
def review_session(
    session_id: str,
    payload: OTReviewRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    lifecycle: OTSessionLifecycle = Depends(get_lifecycle),
) -> OTSessionRead:
    session = lifecycle.review_session(
        session_id,
        payload.action,
        principal.user_id,
        notes=payload.notes,
        adjusted_hours=payload.adjusted_hours,
    )
    request.state.event_id = session_id
    return OTSessionRead.model_validate(session)


@router.post("/reconciliation/run", response_model=ReconciliationRunRead)
async def run_reconciliation(
    _: Principal = Depends(require_admin),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> ReconciliationRunRead:
    summary = await scheduler.run_once()
    return ReconciliationRunRead.model_validate(summary)
