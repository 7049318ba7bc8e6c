"""
WhatsApp Gateway Client

Thin httpx client for the WA gateway process. One WhatsApp session per
tenant lives in the gateway; this side only proxies connect/status/qr and
sends messages.

Every call carries X-WA-Admin-Token. Transport errors and HTTP >= 400
raise UpstreamError (502). A 2xx reply with ok=false is returned as-is so
the caller can record the failure.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings
from app.core.exceptions import UpstreamError
import logging

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class WAGatewayClient:
    def __init__(self, base_url: str, admin_token: str, timeout: float = 15.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.admin_token = admin_token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        headers = {"Accept": "application/json"}
        if self.admin_token:
            headers["X-WA-Admin-Token"] = self.admin_token
        return httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            transport=self._transport,
        )

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, json=payload)
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            detail = ""
            try:
                detail = e.response.json().get("error", "")
            except ValueError:
                detail = e.response.text[:200]
            logger.warning(f"wa-gateway {method} {path} failed: HTTP {e.response.status_code} {detail}")
            raise UpstreamError(f"WA gateway error: {detail or f'HTTP {e.response.status_code}'}")
        except httpx.TimeoutException:
            logger.warning(f"wa-gateway {method} {path} timed out after {self.timeout}s")
            raise UpstreamError("WA gateway timed out")
        except httpx.RequestError as e:
            logger.warning(f"wa-gateway {method} {path} network error: {e}")
            raise UpstreamError("WA gateway unreachable")
        except ValueError:
            raise UpstreamError("WA gateway returned invalid JSON")

    def connect(self, tenant_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v1/tenants/{tenant_id}/connect", {})

    def status(self, tenant_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/tenants/{tenant_id}/status")

    def qr(self, tenant_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/tenants/{tenant_id}/qr")

    def send(self, tenant_id: str, to: str, text: str) -> SendResult:
        data = self._request("POST", f"/v1/tenants/{tenant_id}/send", {"to": to, "text": text})
        return SendResult(ok=bool(data.get("ok")), message_id=data.get("message_id"), error=data.get("error"))

    def send_bulk(self, tenant_id: str, to: List[str], text: str) -> List[SendResult]:
        data = self._request("POST", f"/v1/tenants/{tenant_id}/send-bulk", {"to": to, "text": text})
        return [
            SendResult(ok=bool(r.get("ok")), message_id=r.get("message_id"), error=r.get("error"))
            for r in data.get("results", [])
        ]


def get_wa_gateway() -> WAGatewayClient:
    settings = get_settings()
    return WAGatewayClient(
        base_url=settings.WA_GATEWAY_URL,
        admin_token=settings.WA_GATEWAY_ADMIN_TOKEN,
        timeout=settings.wa_gateway_timeout.total_seconds(),
    )
