"""
Background Schedulers

Wall-clock daemons that run inside the API process:

- InvoiceScheduler: daily at INVOICE_SCHEDULER_TIME (and once on start),
  generates invoices whose due date falls inside INVOICE_HORIZON
- ClientCleanupScheduler: weekly, hard-deletes clients soft-deleted longer
  than CLIENT_RETENTION_DAYS ago
- IsolationSweepScheduler: every ISOLATION_SWEEP_INTERVAL, runs the
  isolation state machine

Each scheduler is a daemon thread. The database is the source of truth so
every pass is an idempotent scan; a pass that raises is logged and the
thread carries on. At most one instance of each scheduler runs per process.

NOTE: times are UTC. "00:05" means 00:05 UTC.
"""
import threading
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, WEEKDAYS, get_settings, parse_clock_time
from app.core.clock import Clock, system_clock
from app.core.exceptions import AppError
from app.database import SessionLocal
from app.models.client import Client, ClientStatus
from app.models.tenant import Tenant, TenantStatus
from app.services.billing import BillingService, billing_period, next_due_date
from app.services.isolation import IsolationService
import logging

logger = logging.getLogger(__name__)

_registry: Dict[str, "BackgroundScheduler"] = {}
_registry_lock = threading.Lock()


class BackgroundScheduler:
    """
    Base class: a thread that sleeps until next_run(now), then calls
    run_once(now). stop() wakes it up and ends the loop.
    """

    name = "scheduler"
    run_on_start = True

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, clock: Clock = system_clock):
        self.session_factory = session_factory
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def next_run(self, now: datetime) -> datetime:
        raise NotImplementedError

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        raise NotImplementedError

    def _tick(self) -> None:
        try:
            self.run_once(self.clock.now())
        except Exception:
            # A failed pass must not kill the thread; the next pass retries
            logger.exception(f"{self.name} pass failed")

    def _loop(self) -> None:
        if self.run_on_start and not self._stop.is_set():
            self._tick()
        while not self._stop.is_set():
            now = self.clock.now()
            wait = max((self.next_run(now) - now).total_seconds(), 0.0)
            if self._stop.wait(wait):
                break
            self._tick()
        logger.info(f"{self.name} stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the thread. Returns False if this scheduler already runs in the process."""
        with _registry_lock:
            current = _registry.get(self.name)
            if current is not None and current.is_running:
                logger.warning(f"{self.name} already running, not starting a second instance")
                return False
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()
            _registry[self.name] = self
        logger.info(f"{self.name} started")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        with _registry_lock:
            if _registry.get(self.name) is self:
                del _registry[self.name]


def next_daily_run(now: datetime, at: Tuple[int, int]) -> datetime:
    hour, minute = at
    candidate = datetime.combine(now.date(), time(hour, minute))
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly_run(now: datetime, weekday: int, at: Tuple[int, int]) -> datetime:
    """weekday: Monday=0 ... Sunday=6."""
    hour, minute = at
    days = (weekday - now.weekday()) % 7
    candidate = datetime.combine(now.date() + timedelta(days=days), time(hour, minute))
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


class InvoiceScheduler(BackgroundScheduler):
    name = "invoice-scheduler"

    def __init__(
        self,
        run_at: Tuple[int, int] = (0, 5),
        horizon: timedelta = timedelta(hours=24),
        billing: Optional[BillingService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
    ):
        super().__init__(session_factory, clock)
        self.run_at = run_at
        self.horizon = horizon
        self.billing = billing or BillingService(clock)

    def next_run(self, now: datetime) -> datetime:
        return next_daily_run(now, self.run_at)

    def is_due(self, client: Client, now: datetime) -> bool:
        """The client's next due date is within the horizon."""
        due = next_due_date(now.date(), client.payment_due_day)
        return datetime.combine(due, time.min) - self.horizon <= now

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock.now()
        counts = {"tenants": 0, "scanned": 0, "created": 0, "skipped": 0, "errors": 0}

        db = self.session_factory()
        try:
            tenants = db.query(Tenant).filter(
                Tenant.status.in_(TenantStatus.SERVING),
                Tenant.deleted_at.is_(None),
            ).all()

            for tenant in tenants:
                counts["tenants"] += 1
                clients = db.query(Client).filter(
                    Client.tenant_id == tenant.id,
                    Client.deleted_at.is_(None),
                    Client.status.in_(ClientStatus.BILLABLE),
                ).order_by(Client.client_code.asc()).all()

                for client in clients:
                    counts["scanned"] += 1
                    if not self.is_due(client, now):
                        continue

                    period_start, _ = billing_period(next_due_date(now.date(), client.payment_due_day))
                    if self.billing.find_period_invoice(db, tenant.id, client.id, period_start):
                        counts["skipped"] += 1
                        continue

                    try:
                        self.billing.generate_monthly_invoice(db, tenant.id, client, now)
                    except (AppError, SQLAlchemyError) as e:
                        db.rollback()
                        counts["errors"] += 1
                        logger.error(
                            f"Invoice generation failed for client {client.client_code}: {e}",
                            extra={"tenant_id": tenant.id, "client_id": client.id},
                        )
                        continue
                    counts["created"] += 1
        finally:
            db.close()

        logger.info(
            f"Invoice scheduler: {counts['created']} created, {counts['skipped']} skipped, "
            f"{counts['errors']} errors, {counts['scanned']} clients scanned"
        )
        return counts


class ClientCleanupScheduler(BackgroundScheduler):
    name = "client-cleanup-scheduler"

    def __init__(
        self,
        weekday: str = "sunday",
        run_at: Tuple[int, int] = (3, 0),
        retention_days: int = 28,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
    ):
        super().__init__(session_factory, clock)
        self.weekday = WEEKDAYS.index(weekday.lower())
        self.run_at = run_at
        self.retention = timedelta(days=retention_days)

    def next_run(self, now: datetime) -> datetime:
        return next_weekly_run(now, self.weekday, self.run_at)

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock.now()
        cutoff = now - self.retention

        db = self.session_factory()
        try:
            deleted = db.query(Client).filter(
                Client.deleted_at.isnot(None),
                Client.deleted_at < cutoff,
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"Client cleanup: {deleted} clients hard-deleted (deleted before {cutoff:%Y-%m-%d %H:%M})")
        return {"deleted": deleted}


class IsolationSweepScheduler(BackgroundScheduler):
    name = "isolation-sweep-scheduler"

    def __init__(
        self,
        interval: timedelta = timedelta(minutes=15),
        isolation: Optional[IsolationService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
    ):
        super().__init__(session_factory, clock)
        self.interval = interval
        self.isolation = isolation or IsolationService(clock)

    def next_run(self, now: datetime) -> datetime:
        return now + self.interval

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return self.isolation.sweep(db, now or self.clock.now())
        finally:
            db.close()


_started: List[BackgroundScheduler] = []


def build_schedulers(settings: Settings, session_factory: Callable[[], Session] = SessionLocal,
                     clock: Clock = system_clock) -> List[BackgroundScheduler]:
    return [
        InvoiceScheduler(
            run_at=parse_clock_time(settings.INVOICE_SCHEDULER_TIME),
            horizon=settings.invoice_horizon,
            session_factory=session_factory,
            clock=clock,
        ),
        ClientCleanupScheduler(
            weekday=settings.CLIENT_CLEANUP_WEEKDAY,
            run_at=parse_clock_time(settings.CLIENT_CLEANUP_TIME),
            retention_days=settings.CLIENT_RETENTION_DAYS,
            session_factory=session_factory,
            clock=clock,
        ),
        IsolationSweepScheduler(
            interval=settings.isolation_sweep_interval,
            session_factory=session_factory,
            clock=clock,
        ),
    ]


def start_schedulers(settings: Optional[Settings] = None) -> List[BackgroundScheduler]:
    settings = settings or get_settings()
    for scheduler in build_schedulers(settings):
        if scheduler.start():
            _started.append(scheduler)
    return list(_started)


def stop_schedulers(timeout: float = 5.0) -> None:
    while _started:
        _started.pop().stop(timeout)
