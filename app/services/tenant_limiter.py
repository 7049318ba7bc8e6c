"""
Per-tenant send limiter.

A process-global map of tenant id -> bounded semaphore. A worker holds one
slot for the duration of a single outbound send, so at most
`max_concurrent` sends per tenant run at once in this process.

NOTE: intra-process only. Two worker processes each get their own slots;
pin a tenant to one worker (or move the counter to Redis) if that matters.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from app.config import get_settings


class TenantLimiter:
    def __init__(self, max_concurrent: int = 1):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._slots: Dict[str, threading.BoundedSemaphore] = {}
        self._lock = threading.Lock()

    def _semaphore(self, tenant_id: str) -> threading.BoundedSemaphore:
        with self._lock:
            sem = self._slots.get(tenant_id)
            if sem is None:
                sem = threading.BoundedSemaphore(self.max_concurrent)
                self._slots[tenant_id] = sem
            return sem

    def acquire(self, tenant_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a slot is free. Returns False only when `timeout` runs out."""
        if timeout is None:
            return self._semaphore(tenant_id).acquire()
        return self._semaphore(tenant_id).acquire(timeout=timeout)

    def release(self, tenant_id: str) -> None:
        self._semaphore(tenant_id).release()

    @contextmanager
    def slot(self, tenant_id: str):
        self.acquire(tenant_id)
        try:
            yield
        finally:
            self.release(tenant_id)


_limiter: Optional[TenantLimiter] = None
_limiter_lock = threading.Lock()


def get_tenant_limiter() -> TenantLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = TenantLimiter(get_settings().WA_TENANT_CONCURRENCY)
        return _limiter
