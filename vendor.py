from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import VendorProtocolError, VendorRejected, VendorTransportError
from pricing import ServiceDescriptor, service_bounds, to_decimal, to_int

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0
LOG_PREVIEW_CHARS = 500


def _preview(raw: Any, limit: int = LOG_PREVIEW_CHARS) -> str:
    text = str(raw)
    return (text[:limit] + "…") if len(text) > limit else text


def _error_text(raw: Any) -> Optional[str]:
    """Return the panel's error/message text if the payload carries one."""
    if not isinstance(raw, dict):
        return None
    for key in ("error", "message"):
        value = raw.get(key)
        if value:
            return str(value)
    return None


def _to_flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


# -----------------------------
# Response normalizers
# -----------------------------
def parse_services(raw: Any) -> List[ServiceDescriptor]:
    """Normalize a `services` response into descriptors.

    Panels answer with either a bare list or `{"services": [...]}`; anything
    carrying `error`/`message` is a failure regardless of HTTP status.
    """
    err = _error_text(raw)
    if err:
        raise VendorProtocolError(err, raw)

    if isinstance(raw, list):
        items = raw
    elif isinstance(raw, dict) and isinstance(raw.get("services"), list):
        items = raw["services"]
    else:
        raise VendorProtocolError("Unexpected services response", raw)

    out: List[ServiceDescriptor] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning("Skipping non-object service entry: %r", item)
            continue
        sid = to_int(item.get("service"), 0)
        if sid <= 0:
            logger.warning("Skipping service entry without id: %s", _preview(item, 200))
            continue
        lo, hi = service_bounds(item.get("min"), item.get("max"))
        out.append(
            ServiceDescriptor(
                service_id=sid,
                name=str(item.get("name") or "").strip(),
                category=str(item.get("category") or "").strip(),
                type=str(item.get("type") or "").strip(),
                rate=to_decimal(item.get("rate")),
                min=lo,
                max=hi,
                description=str(item.get("description") or item.get("desc") or "").strip(),
                refill=_to_flag(item.get("refill")),
                cancel=_to_flag(item.get("cancel")),
            )
        )
    return out


def parse_order_id(raw: Any) -> str:
    if isinstance(raw, dict):
        if raw.get("error"):
            raise VendorRejected(str(raw["error"]), raw)
        nested = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        for candidate in (
            raw.get("order"),
            raw.get("order_id"),
            nested.get("order"),
            nested.get("order_id"),
        ):
            if candidate not in (None, "", 0):
                return str(candidate)
        msg = raw.get("message") or raw.get("status") or "Unknown vendor error"
        raise VendorRejected(str(msg), raw)
    raise VendorRejected("Unknown vendor error", raw)


def parse_status(raw: Any) -> str:
    if isinstance(raw, dict):
        if raw.get("error"):
            raise VendorProtocolError(str(raw["error"]), raw)
        status = raw.get("status") or raw.get("Status")
        if status is not None and str(status).strip():
            return str(status).strip()
    raise VendorProtocolError(_error_text(raw) or "No status in vendor response", raw)


# -----------------------------
# Panel adapter (SMM API v2 - form data)
# -----------------------------
class SMMPanelAdapter:
    """Client for a single SMM panel speaking the `key` + `action` form protocol.

    No retries happen here; callers decide what a failure means.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = (api_url or "").strip()
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _post(self, payload: Dict[str, Any]) -> Any:
        data = {"key": self.api_key}
        data.update({k: str(v) for k, v in payload.items() if v is not None})
        action = payload.get("action")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.api_url, data=data)
        except httpx.TimeoutException as e:
            logger.warning("Vendor %s timed out after %ss", action, self.timeout)
            raise VendorTransportError(f"Vendor request timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            logger.warning("Vendor %s transport error: %s", action, e)
            raise VendorTransportError(str(e) or "Vendor request failed") from e

        try:
            body = r.json()
        except (json.JSONDecodeError, ValueError) as e:
            if r.status_code >= 400:
                raise VendorTransportError(f"Vendor HTTP {r.status_code}") from e
            raise VendorProtocolError("Vendor returned a non-JSON response", r.text[:200]) from e

        logger.info("Vendor %s response (HTTP %s): %s", action, r.status_code, _preview(body))
        if r.status_code >= 400 and not _error_text(body):
            raise VendorTransportError(f"Vendor HTTP {r.status_code}", body)
        return body

    async def list_services(self) -> List[ServiceDescriptor]:
        raw = await self._post({"action": "services"})
        return parse_services(raw)

    async def place_order(
        self,
        service_id: int,
        quantity: int,
        link: str,
        comments: Optional[str] = None,
    ) -> str:
        payload = {
            "action": "add",
            "service": service_id,
            "quantity": quantity,
            "link": link,
            "comments": comments or None,
        }
        raw = await self._post(payload)
        try:
            return parse_order_id(raw)
        except VendorRejected as e:
            logger.warning("Vendor rejected order service=%s qty=%s: %s", service_id, quantity, e.vendor_message)
            raise

    async def get_order_status(self, vendor_order_id: str) -> str:
        raw = await self._post({"action": "status", "order": vendor_order_id})
        return parse_status(raw)
