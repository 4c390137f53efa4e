"""Reconciliation of forgotten state: OT sessions nobody ended and attendance
check-outs nobody recorded.

The scheduler scans a few local days back so that a process that was down
overnight still closes stale sessions on its first (startup) run; open sessions
older than that window are picked up by a separate query. A closed session is
parked in ``PENDING_REVIEW`` with zero hours; the elapsed time only goes into
the note for the reviewing admin. A forgotten check-out is set to the
department close time and stamped ``auto_corrected_at`` for admin review.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Hashable, Iterable, TypeVar

from attendance_ot.audit import log_audit, notify
from attendance_ot.models import (
    AttendanceRecord,
    AuditActorType,
    Department,
    Holiday,
    OTSession,
    OTSessionStatus,
    OTType,
    User,
)
from attendance_ot.repository import AttendanceRepository
from attendance_ot.services.payroll_lock import PayrollLockGuard
from attendance_ot.services.time_utils import (
    TimeParseError,
    format_local_dt,
    hours_between,
    local_date,
    local_datetime_on,
    local_end_of_day_utc,
    normalize_ts,
    utcnow,
)
from attendance_ot.settings import get_reconciliation_interval_seconds, get_settings, get_weekend_days

logger = logging.getLogger("attendance_ot.reconciliation")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

RULE_EARLY_ARRIVAL = "early_arrival_boundary"
RULE_FLAT = "flat_threshold"

CHECKOUT_DUE = "due"
CHECKOUT_NOT_DUE = "not_due"
CHECKOUT_HOLIDAY = "holiday"
CHECKOUT_WEEKEND = "weekend"
CHECKOUT_OT_IN_PROGRESS = "ot_in_progress"
CHECKOUT_NO_TIMING = "no_department_timing"


@dataclass(frozen=True, slots=True)
class AutoCloseDecision:
    should_close: bool
    rule: str
    running_hours: float
    boundary: datetime | None = None


@dataclass(frozen=True, slots=True)
class CheckoutDecision:
    should_close: bool
    reason: str
    checkout_at: datetime | None = None
    threshold: datetime | None = None


@dataclass(slots=True)
class RunContext:
    """Lookups shared by every session of one run, discarded afterwards."""

    now: datetime
    users: dict[int, User | None] = field(default_factory=dict)
    departments: dict[int, Department | None] = field(default_factory=dict)
    locked_months: dict[tuple[int, int], bool] = field(default_factory=dict)
    holidays: dict[date, Holiday | None] = field(default_factory=dict)
    failed_lookups: set[tuple[str, Any]] = field(default_factory=set)

    def department_for(self, user_id: int) -> Department | None:
        user = self.users.get(user_id)
        if user is None or user.department_id is None:
            return None
        return self.departments.get(user.department_id)

    def is_month_locked(self, day: date) -> bool:
        return self.locked_months.get((day.year, day.month), False)

    def is_locked(self, session: OTSession) -> bool:
        return session.payroll_locked or self.is_month_locked(session.work_date)


@dataclass(slots=True)
class ReconciliationSummary:
    started_at: datetime
    finished_at: datetime | None = None
    scanned_records: int = 0
    open_sessions: int = 0
    closed: int = 0
    skipped_locked: int = 0
    errors: int = 0
    open_checkouts: int = 0
    auto_checked_out: int = 0
    fatal_error: str | None = None
    closed_session_ids: list[str] = field(default_factory=list)
    auto_checked_out_record_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned_records": self.scanned_records,
            "open_sessions": self.open_sessions,
            "closed": self.closed,
            "open_checkouts": self.open_checkouts,
            "auto_checked_out": self.auto_checked_out,
            "skipped_locked": self.skipped_locked,
            "errors": self.errors,
            "fatal_error": self.fatal_error,
            "closed_session_ids": list(self.closed_session_ids),
            "auto_checked_out_record_ids": list(self.auto_checked_out_record_ids),
        }


def early_arrival_boundary(
    session: OTSession,
    department: Department | None,
    *,
    lead_minutes: int,
) -> datetime | None:
    if department is None or not department.check_in_time:
        return None
    try:
        check_in_at = local_datetime_on(local_date(session.start_time), department.check_in_time)
    except TimeParseError:
        logger.warning(
            "department_timing_unparseable",
            extra={"department_id": department.id, "check_in_time": department.check_in_time},
        )
        return None
    return check_in_at - timedelta(minutes=lead_minutes)


def should_auto_close(
    session: OTSession,
    now: datetime,
    *,
    department: Department | None,
    flat_close_hours: float,
    lead_minutes: int,
) -> AutoCloseDecision:
    started_at = normalize_ts(session.start_time)
    now = normalize_ts(now)
    running_hours = (now - started_at).total_seconds() / 3600

    if session.ot_type == OTType.EARLY_ARRIVAL:
        boundary = early_arrival_boundary(session, department, lead_minutes=lead_minutes)
        # A start at or after the boundary cannot be an early arrival; use the flat rule.
        if boundary is not None and started_at < boundary:
            return AutoCloseDecision(
                should_close=now >= boundary,
                rule=RULE_EARLY_ARRIVAL,
                running_hours=running_hours,
                boundary=boundary,
            )

    return AutoCloseDecision(
        should_close=running_hours > flat_close_hours,
        rule=RULE_FLAT,
        running_hours=running_hours,
    )


def expected_checkout_at(check_in_time: datetime, department: Department | None) -> datetime | None:
    """Department close time for the shift that started at ``check_in_time``."""
    if department is None or not department.check_out_time:
        return None
    checked_in_at = normalize_ts(check_in_time)
    shift_day = local_date(checked_in_at)
    try:
        checkout_at = local_datetime_on(shift_day, department.check_out_time)
    except TimeParseError:
        logger.warning(
            "department_timing_unparseable",
            extra={"department_id": department.id, "check_out_time": department.check_out_time},
        )
        return None
    if checkout_at <= checked_in_at:
        # Overnight shift: the close time falls on the next local day.
        checkout_at = local_datetime_on(shift_day + timedelta(days=1), department.check_out_time)
    return checkout_at


def should_auto_check_out(
    record: AttendanceRecord,
    now: datetime,
    *,
    department: Department | None,
    holiday: Holiday | None,
    weekend_days: set[int],
    grace_minutes: int,
    ot_in_progress: bool,
) -> CheckoutDecision:
    if holiday is not None and holiday.is_active:
        return CheckoutDecision(should_close=False, reason=CHECKOUT_HOLIDAY)
    if record.work_date.weekday() in weekend_days:
        return CheckoutDecision(should_close=False, reason=CHECKOUT_WEEKEND)
    if ot_in_progress:
        return CheckoutDecision(should_close=False, reason=CHECKOUT_OT_IN_PROGRESS)

    checkout_at = expected_checkout_at(record.check_in_time, department)
    if checkout_at is None:
        return CheckoutDecision(should_close=False, reason=CHECKOUT_NO_TIMING)
    threshold = checkout_at + timedelta(minutes=grace_minutes)
    due = normalize_ts(now) >= threshold
    return CheckoutDecision(
        should_close=due,
        reason=CHECKOUT_DUE if due else CHECKOUT_NOT_DUE,
        checkout_at=checkout_at,
        threshold=threshold,
    )


class ReconciliationScheduler:
    def __init__(
        self,
        repository: AttendanceRepository,
        *,
        lock_guard: PayrollLockGuard | None = None,
        interval_seconds: int | None = None,
        lookback_days: int | None = None,
        flat_close_hours: float | None = None,
        lead_minutes: int | None = None,
        run_on_startup: bool | None = None,
        auto_checkout_enabled: bool | None = None,
        checkout_grace_minutes: int | None = None,
        weekend_days: set[int] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self._repository = repository
        self._lock_guard = lock_guard or PayrollLockGuard(repository)
        self.interval_seconds = interval_seconds if interval_seconds is not None else get_reconciliation_interval_seconds()
        self.lookback_days = max(1, lookback_days if lookback_days is not None else settings.reconciliation_lookback_days)
        self.flat_close_hours = flat_close_hours if flat_close_hours is not None else settings.ot_flat_close_hours
        self.lead_minutes = lead_minutes if lead_minutes is not None else settings.ot_early_close_lead_minutes
        self.run_on_startup = run_on_startup if run_on_startup is not None else settings.reconciliation_run_on_startup
        self.auto_checkout_enabled = (
            auto_checkout_enabled if auto_checkout_enabled is not None else settings.auto_checkout_enabled
        )
        self.checkout_grace_minutes = (
            checkout_grace_minutes if checkout_grace_minutes is not None else settings.auto_checkout_grace_minutes
        )
        self.weekend_days = weekend_days if weekend_days is not None else get_weekend_days()
        self._clock = clock
        self._run_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self.last_summary: ReconciliationSummary | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "lookback_days": self.lookback_days,
            "last_run": self.last_summary.to_dict() if self.last_summary is not None else None,
        }

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="ot-reconciliation")
        logger.info(
            "reconciliation_scheduler_started",
            extra={"interval_seconds": self.interval_seconds, "lookback_days": self.lookback_days},
        )

    async def stop(self) -> None:
        """Stop ticking. An in-flight run is allowed to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        if task is not None:
            await task
        self._stop_event = None
        self._task = None
        logger.info("reconciliation_scheduler_stopped")

    async def _loop(self, stop_event: asyncio.Event) -> None:
        if self.run_on_startup:
            await self._tick()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self._tick()

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception:
            logger.exception("reconciliation_tick_failed")

    async def run_once(self, now: datetime | None = None) -> ReconciliationSummary:
        async with self._run_lock:
            run_at = normalize_ts(now if now is not None else self._clock())
            summary = ReconciliationSummary(started_at=run_at)
            try:
                await self._reconcile(run_at, summary)
            except Exception as exc:
                summary.fatal_error = f"{exc.__class__.__name__}: {exc}"
                logger.exception("reconciliation_run_failed", extra={"started_at": run_at.isoformat()})
            summary.finished_at = normalize_ts(self._clock())
            self.last_summary = summary
            logger.info("reconciliation_run_complete", extra=summary.to_dict())
            return summary

    async def _reconcile(self, now: datetime, summary: ReconciliationSummary) -> None:
        today = local_date(now)
        window_start = today - timedelta(days=self.lookback_days)
        records = await asyncio.to_thread(
            self._repository.list_attendance_by_date_range,
            window_start,
            today,
        )
        summary.scanned_records = len(records)
        open_sessions = [
            session
            for record in records
            for session in record.ot_sessions
            if session.status == OTSessionStatus.IN_PROGRESS
        ]
        stale_sessions = await asyncio.to_thread(self._repository.list_open_ot_sessions, window_start)
        seen = {session.session_id for session in open_sessions}
        open_sessions.extend(session for session in stale_sessions if session.session_id not in seen)
        open_checkouts = []
        if self.auto_checkout_enabled:
            open_checkouts = [
                record for record in records if record.check_in_time is not None and record.check_out_time is None
            ]
        summary.open_sessions = len(open_sessions)
        summary.open_checkouts = len(open_checkouts)
        if not open_sessions and not open_checkouts:
            return

        context = await self._build_context(now, open_sessions, open_checkouts)
        for session in open_sessions:
            try:
                outcome = await asyncio.to_thread(self._process_session, session, context)
            except Exception:
                summary.errors += 1
                logger.exception(
                    "reconciliation_session_failed",
                    extra={"session_id": session.session_id, "user_id": session.user_id},
                )
                continue
            if outcome == "closed":
                summary.closed += 1
                summary.closed_session_ids.append(session.session_id)
            elif outcome == "skipped_locked":
                summary.skipped_locked += 1

        closed_ids = set(summary.closed_session_ids)
        for record in open_checkouts:
            try:
                outcome = await asyncio.to_thread(self._process_checkout, record, context, closed_ids)
            except Exception:
                summary.errors += 1
                logger.exception(
                    "reconciliation_checkout_failed",
                    extra={"attendance_id": record.id, "user_id": record.user_id},
                )
                continue
            if outcome == "checked_out":
                summary.auto_checked_out += 1
                summary.auto_checked_out_record_ids.append(record.id)
            elif outcome == "skipped_locked":
                summary.skipped_locked += 1

    async def _build_context(
        self,
        now: datetime,
        open_sessions: list[OTSession],
        open_checkouts: list[AttendanceRecord],
    ) -> RunContext:
        context = RunContext(now=now)
        user_ids = {session.user_id for session in open_sessions if session.ot_type == OTType.EARLY_ARRIVAL}
        user_ids.update(record.user_id for record in open_checkouts)
        context.users = await self._fetch_all(
            "user", sorted(user_ids), self._repository.get_user, context.failed_lookups
        )
        department_ids = sorted(
            {user.department_id for user in context.users.values() if user is not None and user.department_id is not None}
        )
        context.departments = await self._fetch_all(
            "department", department_ids, self._repository.get_department_timing, context.failed_lookups
        )
        work_dates = [session.work_date for session in open_sessions] + [record.work_date for record in open_checkouts]
        months = sorted({(day.year, day.month) for day in work_dates})
        locked = await self._fetch_all(
            "payroll_lock",
            months,
            lambda key: self._lock_guard.is_locked(date(key[0], key[1], 1)),
            context.failed_lookups,
        )
        context.locked_months = {key: bool(value) for key, value in locked.items()}
        context.holidays = await self._fetch_all(
            "holiday",
            sorted({record.work_date for record in open_checkouts}),
            self._repository.get_holiday,
            context.failed_lookups,
        )
        return context

    async def _fetch_all(
        self,
        kind: str,
        keys: Iterable[K],
        fetch: Callable[[K], V],
        failures: set[tuple[str, Any]] | None = None,
    ) -> dict[K, V | None]:
        keys = list(keys)
        if not keys:
            return {}
        results = await asyncio.gather(
            *(asyncio.to_thread(fetch, key) for key in keys),
            return_exceptions=True,
        )
        fetched: dict[K, V | None] = {}
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "reconciliation_lookup_failed",
                    extra={"kind": kind, "key": str(key), "error": result.__class__.__name__},
                )
                fetched[key] = None
                if failures is not None:
                    failures.add((kind, key))
            else:
                fetched[key] = result
        return fetched

    def _process_session(self, session: OTSession, context: RunContext) -> str:
        if context.is_locked(session):
            logger.info("reconciliation_session_locked", extra={"session_id": session.session_id})
            return "skipped_locked"

        decision = should_auto_close(
            session,
            context.now,
            department=context.department_for(session.user_id),
            flat_close_hours=self.flat_close_hours,
            lead_minutes=self.lead_minutes,
        )
        if not decision.should_close:
            return "kept"

        end_time = local_end_of_day_utc(session.start_time)
        elapsed_hours = hours_between(session.start_time, end_time)
        note = (
            f"Session auto-closed at {format_local_dt(context.now)} ({decision.rule}). "
            f"Calculated {elapsed_hours:.2f}h (needs admin verification)."
        )
        updated = self._repository.update_ot_session(
            session.session_id,
            {
                "status": OTSessionStatus.PENDING_REVIEW,
                "end_time": end_time,
                "ot_hours": 0.0,
                "auto_closed_at": context.now,
                "auto_closed_note": note,
            },
            expected_status=OTSessionStatus.IN_PROGRESS,
        )
        if updated is None:
            return "already_closed"

        notify(
            self._repository,
            user_id=session.user_id,
            type="admin_review",
            title="OT session auto-closed",
            message=(
                f"Your OT session started {format_local_dt(session.start_time)} was not ended and has been "
                "closed automatically. An admin will verify the hours."
            ),
        )
        log_audit(
            self._repository,
            actor_type=AuditActorType.SYSTEM,
            actor_id="reconciliation",
            action="OT_SESSION_AUTO_CLOSED",
            entity_type="ot_session",
            entity_id=session.session_id,
            details={
                "rule": decision.rule,
                "running_hours": round(decision.running_hours, 2),
                "calculated_hours": elapsed_hours,
                "boundary": decision.boundary.isoformat() if decision.boundary else None,
            },
        )
        logger.info(
            "ot_session_auto_closed",
            extra={"session_id": session.session_id, "user_id": session.user_id, "rule": decision.rule},
        )
        return "closed"

    def _process_checkout(self, record: AttendanceRecord, context: RunContext, closed_session_ids: set[str]) -> str:
        if context.is_month_locked(record.work_date):
            logger.info("reconciliation_checkout_locked", extra={"attendance_id": record.id})
            return "skipped_locked"
        if ("holiday", record.work_date) in context.failed_lookups:
            logger.warning(
                "reconciliation_checkout_deferred",
                extra={"attendance_id": record.id, "work_date": record.work_date.isoformat()},
            )
            return "kept"

        ot_in_progress = any(
            session.status == OTSessionStatus.IN_PROGRESS and session.session_id not in closed_session_ids
            for session in record.ot_sessions
        )
        department = context.department_for(record.user_id)
        decision = should_auto_check_out(
            record,
            context.now,
            department=department,
            holiday=context.holidays.get(record.work_date),
            weekend_days=self.weekend_days,
            grace_minutes=self.checkout_grace_minutes,
            ot_in_progress=ot_in_progress,
        )
        if not decision.should_close:
            return "kept"

        reason = (
            f"Forgotten checkout (system auto-corrected after {self.checkout_grace_minutes} minutes "
            f"past {department.check_out_time})"
        )
        updated = self._repository.close_open_checkout(
            record.id,
            {
                "check_out_time": decision.checkout_at,
                "auto_corrected_at": context.now,
                "auto_correction_reason": reason,
            },
        )
        if updated is None:
            return "already_checked_out"

        notify(
            self._repository,
            user_id=record.user_id,
            type="auto_checkout",
            title="Check-out recorded automatically",
            message=(
                f"You did not check out on {record.work_date.isoformat()}. Your check-out was set to "
                f"{department.check_out_time} and is waiting for admin review."
            ),
        )
        log_audit(
            self._repository,
            actor_type=AuditActorType.SYSTEM,
            actor_id="reconciliation",
            action="ATTENDANCE_AUTO_CHECKOUT",
            entity_type="attendance",
            entity_id=str(record.id),
            details={
                "work_date": record.work_date.isoformat(),
                "check_out_time": decision.checkout_at.isoformat(),
                "threshold": decision.threshold.isoformat(),
            },
        )
        logger.info(
            "attendance_auto_checked_out",
            extra={"attendance_id": record.id, "user_id": record.user_id},
        )
        return "checked_out"
