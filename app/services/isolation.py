"""
Isolation Service

Drives the client status machine from billing state:

    active  + unpaid invoice past due       -> isolir     (automatic)
    isolir  + every past-due invoice paid   -> active     (automatic)
    suspended / terminated                  -> untouched by the sweep

Operators may also isolate, reactivate, suspend or terminate by hand;
those transitions are guarded by CLIENT_TRANSITIONS as well. Every
isolate/reactivate appends an IsolirLog. The logs stay `pending` until a
router mutation reports back; the status machine does not wait for it.
"""
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import ClientNotFoundError, InvalidTransitionError, ValidationError
from app.models.billing import IsolirAction, IsolirLog, IsolirLogStatus
from app.models.client import CLIENT_TRANSITIONS, Client, ClientStatus
from app.models.tenant import Tenant, TenantStatus
from app.services.billing import BillingService, unpaid_overdue_invoices
import logging

logger = logging.getLogger(__name__)

OVERDUE_REASON_PREFIX = "overdue:"


class IsolationService:
    def __init__(self, clock: Clock = system_clock, billing: Optional[BillingService] = None):
        self.clock = clock
        self.billing = billing or BillingService(clock)

    # ------------------------------------------------------------------
    # Automatic sweep
    # ------------------------------------------------------------------

    def sweep(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One pass over every serving tenant. Each client is evaluated at
        most once. Returns work counts.
        """
        now = now or self.clock.now()
        totals = {"tenants": 0, "overdue_marked": 0, "isolated": 0, "reactivated": 0, "errors": 0}

        tenant_ids = [
            tid for (tid,) in db.query(Tenant.id).filter(
                Tenant.status.in_(TenantStatus.SERVING),
                Tenant.deleted_at.is_(None),
            ).all()
        ]

        for tenant_id in tenant_ids:
            try:
                counts = self.sweep_tenant(db, tenant_id, now)
            except SQLAlchemyError:
                db.rollback()
                totals["errors"] += 1
                logger.exception("Isolation sweep failed for tenant", extra={"tenant_id": tenant_id})
                continue
            totals["tenants"] += 1
            for key, value in counts.items():
                totals[key] += value

        logger.info(
            f"Isolation sweep: {totals['isolated']} isolated, {totals['reactivated']} reactivated, "
            f"{totals['overdue_marked']} invoices overdue across {totals['tenants']} tenants"
        )
        return totals

    def sweep_tenant(self, db: Session, tenant_id: str, now: datetime) -> Dict[str, int]:
        today = now.date()
        overdue_marked = self.billing.mark_overdue(db, tenant_id, today)

        # Row locks serialize this pass against manual status changes
        clients = db.query(Client).filter(
            Client.tenant_id == tenant_id,
            Client.deleted_at.is_(None),
            Client.status.in_((ClientStatus.ACTIVE, ClientStatus.ISOLIR)),
        ).with_for_update().all()

        overdue = unpaid_overdue_invoices(db, tenant_id, [c.id for c in clients], today)

        isolated = reactivated = 0
        for client in clients:
            unpaid = overdue.get(client.id, [])
            if client.status == ClientStatus.ACTIVE and unpaid:
                earliest = unpaid[0]
                self._isolate(
                    db, client, now,
                    reason=f"{OVERDUE_REASON_PREFIX}{earliest.invoice_number}",
                    invoice_id=earliest.id,
                    automatic=True,
                )
                isolated += 1
            elif (
                client.status == ClientStatus.ISOLIR
                and not unpaid
                and (client.isolir_reason or "").startswith(OVERDUE_REASON_PREFIX)
            ):
                self._reactivate(db, client, now, automatic=True)
                reactivated += 1

        db.commit()
        return {"overdue_marked": overdue_marked, "isolated": isolated, "reactivated": reactivated}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _check(self, client: Client, target: str) -> None:
        if target not in CLIENT_TRANSITIONS.get(client.status, set()):
            raise InvalidTransitionError("client", client.status, target)

    def _isolate(self, db: Session, client: Client, now: datetime, reason: str,
                 invoice_id: Optional[str] = None, automatic: bool = True,
                 user_id: Optional[str] = None) -> IsolirLog:
        self._check(client, ClientStatus.ISOLIR)
        client.status = ClientStatus.ISOLIR
        client.isolir_reason = reason
        client.isolir_at = now
        log = IsolirLog(
            tenant_id=client.tenant_id,
            client_id=client.id,
            invoice_id=invoice_id,
            action=IsolirAction.ISOLATE,
            status=IsolirLogStatus.PENDING,
            is_automatic=automatic,
            reason=reason,
            created_by=user_id,
            created_at=now,
        )
        db.add(log)
        logger.info(
            f"Client {client.client_code} isolated ({reason})",
            extra={"tenant_id": client.tenant_id, "client_id": client.id},
        )
        return log

    def _reactivate(self, db: Session, client: Client, now: datetime, automatic: bool = True,
                    user_id: Optional[str] = None, reason: Optional[str] = None) -> IsolirLog:
        self._check(client, ClientStatus.ACTIVE)
        client.status = ClientStatus.ACTIVE
        client.isolir_reason = None
        client.isolir_at = None
        log = IsolirLog(
            tenant_id=client.tenant_id,
            client_id=client.id,
            action=IsolirAction.REACTIVATE,
            status=IsolirLogStatus.PENDING,
            is_automatic=automatic,
            reason=reason,
            created_by=user_id,
            created_at=now,
        )
        db.add(log)
        logger.info(
            f"Client {client.client_code} reactivated",
            extra={"tenant_id": client.tenant_id, "client_id": client.id},
        )
        return log

    def _load_locked(self, db: Session, tenant_id: str, client_id: str) -> Client:
        client = db.query(Client).filter(
            Client.id == client_id,
            Client.tenant_id == tenant_id,
            Client.deleted_at.is_(None),
        ).with_for_update().first()
        if not client:
            db.rollback()
            raise ClientNotFoundError(client_id)
        return client

    def isolate_client(self, db: Session, tenant_id: str, client_id: str,
                       reason: Optional[str] = None, user_id: Optional[str] = None) -> Client:
        client = self._load_locked(db, tenant_id, client_id)
        try:
            self._isolate(db, client, self.clock.now(), reason=reason or "manual",
                          automatic=False, user_id=user_id)
        except InvalidTransitionError:
            db.rollback()
            raise
        db.commit()
        return client

    def reactivate_client(self, db: Session, tenant_id: str, client_id: str,
                          user_id: Optional[str] = None, reason: Optional[str] = None) -> Client:
        client = self._load_locked(db, tenant_id, client_id)
        try:
            self._reactivate(db, client, self.clock.now(), automatic=False, user_id=user_id, reason=reason)
        except InvalidTransitionError:
            db.rollback()
            raise
        db.commit()
        return client

    def change_status(self, db: Session, tenant_id: str, client_id: str, target: str,
                      reason: Optional[str] = None, user_id: Optional[str] = None) -> Client:
        """Operator status change. isolir and active go through the logged paths."""
        if target not in ClientStatus.ALL:
            raise ValidationError(f"Unknown client status: {target}")

        client = self._load_locked(db, tenant_id, client_id)
        now = self.clock.now()
        try:
            if target == ClientStatus.ISOLIR:
                self._isolate(db, client, now, reason=reason or "manual", automatic=False, user_id=user_id)
            elif target == ClientStatus.ACTIVE and client.status == ClientStatus.ISOLIR:
                self._reactivate(db, client, now, automatic=False, user_id=user_id, reason=reason)
            else:
                self._check(client, target)
                client.status = target
                if target == ClientStatus.ACTIVE:
                    client.isolir_reason = None
                    client.isolir_at = None
        except InvalidTransitionError:
            db.rollback()
            raise

        db.commit()
        logger.info(
            f"Client {client.client_code} status -> {target}",
            extra={"tenant_id": tenant_id, "client_id": client.id},
        )
        return client

    def logs_for(self, db: Session, tenant_id: str, client_id: str):
        return db.query(IsolirLog).filter(
            IsolirLog.tenant_id == tenant_id,
            IsolirLog.client_id == client_id,
        ).order_by(IsolirLog.created_at.desc()).all()
