"""
RADIUS Service

Backs the RADIUS-over-REST surface. The NAS (router) identifies the tenant;
the voucher code is the RADIUS User-Name.

Voucher lifecycle:
    active --(first accounting Start)--> used --(expires_at passes)--> expired

Authentication does not consume a voucher. The first Start does, through a
conditional update on `used_at IS NULL`, so a second Start (NAS retry, or
the same voucher seen by two NAS entries) leaves used_at/expires_at alone.
"""
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import NASNotRegisteredError
from app.models.radius import (
    RadiusAuthAttempt,
    RadiusSession,
    Router,
    Voucher,
    VoucherStatus,
)
from app.schemas.radius import ACCT_START, ACCT_STOP, RadiusAcctRequest, RadiusAuthRequest
import logging

logger = logging.getLogger(__name__)

RATE_LIMIT_MODE_AUTH_ONLY = "radius_auth_only"


def secret_matches(configured: str, presented: Optional[str]) -> bool:
    """Constant-time check. An empty configured secret matches nothing."""
    if not configured:
        return False
    return hmac.compare_digest(configured.encode(), (presented or "").encode())


@dataclass
class AuthDecision:
    accepted: bool
    message: str
    reply: Dict[str, str] = field(default_factory=dict)


class RadiusService:
    def __init__(self, clock: Clock = system_clock):
        self.clock = clock

    # ------------------------------------------------------------------
    # NAS resolution
    # ------------------------------------------------------------------

    def resolve_router(self, db: Session, nas_identifier: Optional[str], nas_ip: Optional[str]) -> Router:
        """
        Match by NAS-Identifier first, then NAS-IP-Address. A router matched
        by identifier whose source IP changed gets its nas_ip updated.
        """
        nas_identifier = (nas_identifier or "").strip()
        nas_ip = (nas_ip or "").strip()

        router = None
        if nas_identifier:
            router = db.query(Router).filter(
                Router.nas_identifier == nas_identifier,
                Router.is_revoked.is_(False),
                Router.deleted_at.is_(None),
            ).first()
            if router is not None and nas_ip and router.nas_ip != nas_ip:
                logger.info(
                    f"Router {router.name} NAS IP changed {router.nas_ip} -> {nas_ip}",
                    extra={"tenant_id": router.tenant_id},
                )
                router.nas_ip = nas_ip
                db.commit()

        if router is None and nas_ip:
            router = db.query(Router).filter(
                Router.nas_ip == nas_ip,
                Router.is_revoked.is_(False),
                Router.deleted_at.is_(None),
            ).first()

        if router is None:
            logger.warning(f"RADIUS request from unregistered NAS id={nas_identifier!r} ip={nas_ip!r}")
            raise NASNotRegisteredError()
        return router

    # ------------------------------------------------------------------
    # Access-Request
    # ------------------------------------------------------------------

    def _find_voucher(self, db: Session, tenant_id: str, code: str) -> Optional[Voucher]:
        return db.query(Voucher).filter(
            Voucher.tenant_id == tenant_id,
            Voucher.code == code,
        ).first()

    def _check_voucher(self, db: Session, voucher: Optional[Voucher], router: Router,
                       password: str, now: datetime) -> Optional[str]:
        """Returns the reject reason, or None when the voucher may log in."""
        if voucher is None:
            return "voucher not found"
        if voucher.router_id and voucher.router_id != router.id:
            return "voucher not valid on this router"
        if voucher.expires_at is not None and voucher.expires_at <= now:
            if voucher.status != VoucherStatus.EXPIRED:
                voucher.status = VoucherStatus.EXPIRED
                db.commit()
            return "voucher expired"
        if voucher.status not in VoucherStatus.USABLE:
            return f"voucher {voucher.status}"
        if not hmac.compare_digest(voucher.password.strip().encode(), (password or "").strip().encode()):
            return "password incorrect"
        return None

    def authenticate(self, db: Session, req: RadiusAuthRequest) -> AuthDecision:
        router = self.resolve_router(db, req.nas_identifier, req.nas_ip_address)
        now = self.clock.now()
        username = req.user_name.strip()

        voucher = self._find_voucher(db, router.tenant_id, username) if username else None
        reason = self._check_voucher(db, voucher, router, req.user_password, now)

        db.add(RadiusAuthAttempt(
            tenant_id=router.tenant_id,
            router_id=router.id,
            voucher_id=voucher.id if voucher is not None else None,
            username=username,
            nas_ip=req.nas_ip_address,
            nas_port_id=req.nas_port_id,
            calling_station_id=req.calling_station_id,
            called_station_id=req.called_station_id,
            accepted=reason is None,
            reason=reason,
            created_at=now,
        ))
        db.commit()

        if reason is not None:
            logger.info(
                f"RADIUS reject user={username!r} router={router.name}: {reason}",
                extra={"tenant_id": router.tenant_id},
            )
            return AuthDecision(False, f"Voucher rejected: {reason}")

        reply = {"Reply-Message": "Voucher accepted"}
        package = voucher.package
        if package is not None:
            if package.rate_limit_mode == RATE_LIMIT_MODE_AUTH_ONLY:
                # Rate limit comes from the hotspot profile named after the package
                reply["Class"] = package.name
            else:
                reply["Mikrotik-Rate-Limit"] = package.rate_limit

        logger.info(f"RADIUS accept user={username!r} router={router.name}", extra={"tenant_id": router.tenant_id})
        return AuthDecision(True, "Voucher accepted", reply)

    # ------------------------------------------------------------------
    # Accounting-Request
    # ------------------------------------------------------------------

    def _apply(self, session: RadiusSession, req: RadiusAcctRequest, router: Router,
               voucher: Optional[Voucher], now: datetime) -> None:
        session.router_id = router.id
        if voucher is not None:
            session.voucher_id = voucher.id
        session.username = req.user_name.strip() or session.username or ""
        session.nas_ip = req.nas_ip_address or session.nas_ip
        session.nas_port_id = req.nas_port_id or session.nas_port_id
        session.framed_ip = req.framed_ip_address or session.framed_ip
        session.calling_station_id = req.calling_station_id or session.calling_station_id
        session.called_station_id = req.called_station_id or session.called_station_id
        if req.acct_session_time is not None:
            session.session_time = req.acct_session_time
        if req.acct_input_octets is not None:
            session.input_octets = req.acct_input_octets
        if req.acct_output_octets is not None:
            session.output_octets = req.acct_output_octets
        if session.started_at is None:
            session.started_at = now
        if req.acct_status_type == ACCT_STOP:
            session.stopped_at = now
            session.terminate_cause = req.acct_terminate_cause
        session.updated_at = now

    def _upsert_session(self, db: Session, router: Router, req: RadiusAcctRequest,
                        voucher: Optional[Voucher], now: datetime) -> RadiusSession:
        for attempt in range(2):
            session = db.query(RadiusSession).filter(
                RadiusSession.tenant_id == router.tenant_id,
                RadiusSession.acct_session_id == req.acct_session_id,
            ).first()
            if session is None:
                session = RadiusSession(
                    tenant_id=router.tenant_id,
                    acct_session_id=req.acct_session_id,
                    username=req.user_name.strip(),
                )
                db.add(session)
            self._apply(session, req, router, voucher, now)
            try:
                db.commit()
                return session
            except IntegrityError:
                # Another request inserted the same session id first
                db.rollback()
                if attempt == 1:
                    raise
        return session

    def activate_voucher(self, db: Session, voucher: Voucher, now: datetime) -> bool:
        """First Start only. Returns True when this call activated the voucher."""
        hours = voucher.package.duration_hours if voucher.package is not None else 0
        result = db.execute(
            update(Voucher)
            .where(Voucher.id == voucher.id, Voucher.used_at.is_(None))
            .values(
                used_at=now,
                expires_at=now + timedelta(hours=hours),
                status=VoucherStatus.USED,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.info(f"Voucher {voucher.code} activated, valid {hours}h", extra={"tenant_id": voucher.tenant_id})
            return True
        return False

    def account(self, db: Session, req: RadiusAcctRequest) -> RadiusSession:
        router = self.resolve_router(db, req.nas_identifier, req.nas_ip_address)
        now = self.clock.now()
        username = req.user_name.strip()
        voucher = self._find_voucher(db, router.tenant_id, username) if username else None

        session = self._upsert_session(db, router, req, voucher, now)

        if req.acct_status_type == ACCT_START and voucher is not None:
            self.activate_voucher(db, voucher, now)

        return session

    # ------------------------------------------------------------------
    # Tenant-side reads
    # ------------------------------------------------------------------

    def list_sessions(self, db: Session, tenant_id: str, active_only: bool = False,
                      username: Optional[str] = None, limit: int = 100) -> List[RadiusSession]:
        query = db.query(RadiusSession).filter(RadiusSession.tenant_id == tenant_id)
        if active_only:
            query = query.filter(RadiusSession.stopped_at.is_(None))
        if username:
            query = query.filter(RadiusSession.username == username)
        return query.order_by(RadiusSession.updated_at.desc()).limit(limit).all()

    def list_auth_attempts(self, db: Session, tenant_id: str, accepted: Optional[bool] = None,
                           username: Optional[str] = None, limit: int = 100) -> List[RadiusAuthAttempt]:
        query = db.query(RadiusAuthAttempt).filter(RadiusAuthAttempt.tenant_id == tenant_id)
        if accepted is not None:
            query = query.filter(RadiusAuthAttempt.accepted.is_(accepted))
        if username:
            query = query.filter(RadiusAuthAttempt.username.like(f"{username}%"))
        return query.order_by(RadiusAuthAttempt.created_at.desc()).limit(limit).all()
