from __future__ import annotations

import asyncio
import logging
import math
import time
import weakref
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts import ReconciliationAlerter
from database import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    debit_balance,
    find_user_orders_by_api_ids,
    get_balance,
    insert_order,
    insert_reconciliation_entry,
    list_user_orders,
    run_db_operation,
    update_order_status,
)
from errors import (
    InsufficientBalance,
    InvalidInput,
    QuantityOutOfRange,
    ServiceNotFound,
    StorageFailure,
    UserNotFound,
    VendorError,
    VendorRejected,
    VendorRequestFailed,
)
from models import Order
from pricing import Quote, ServiceDescriptor, charge_amount, compute_quote
from vendor import SMMPanelAdapter

logger = logging.getLogger(__name__)

CATALOG_MAX_LIMIT = 200
CATALOG_DEFAULT_LIMIT = 50


@dataclass(frozen=True)
class PlacementResult:
    order: Order
    quote: Quote


class _FundsGone(Exception):
    """The conditional debit found less than the charge at commit time."""


# -----------------------------
# Input validation
# -----------------------------
def _positive_int(value: Any, field: str) -> int:
    if value is None or value == "" or isinstance(value, bool):
        raise InvalidInput(f"{field} is required")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {field}") from None
    if not math.isfinite(number) or number <= 0 or number != int(number):
        raise InvalidInput(f"Invalid {field}")
    return int(number)


def _valid_link(link: Any) -> str:
    if not link or not isinstance(link, str):
        raise InvalidInput("link is required")
    link = link.strip()
    try:
        parsed = urlparse(link)
    except ValueError:
        raise InvalidInput("Invalid link URL") from None
    if not parsed.scheme or not parsed.netloc or any(ch.isspace() for ch in link):
        raise InvalidInput("Invalid link URL")
    return link


def _vendor_failure(exc: VendorError) -> VendorRequestFailed:
    message = "Vendor rejected order" if isinstance(exc, VendorRejected) else "Vendor request failed"
    return VendorRequestFailed(message, vendor=exc.vendor_message)


def _log_detached_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Detached order placement finished with %s: %s", type(exc).__name__, exc)


class OrderWorkflow:
    """Quote, fund-check, place and record orders against one SMM panel.

    The balance check, the vendor call and the commit run under a per-user lock;
    the debit itself is a conditional update so other processes cannot overdraw.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter: SMMPanelAdapter,
        alerter: Optional[ReconciliationAlerter] = None,
        services_cache_seconds: float = 60.0,
    ) -> None:
        self.session_factory = session_factory
        self.adapter = adapter
        self.alerter = alerter or ReconciliationAlerter(None)
        self.services_cache_seconds = services_cache_seconds
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._catalog: Optional[Tuple[float, List[ServiceDescriptor]]] = None
        # Placements outliving a cancelled request; the loop only holds weak refs.
        self._inflight: "set[asyncio.Future[Order]]" = set()

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    # -----------------------------
    # Catalog
    # -----------------------------
    async def _fetch_services(self) -> List[ServiceDescriptor]:
        try:
            return await self.adapter.list_services()
        except VendorError as e:
            logger.warning("Failed to fetch services: %s", e.vendor_message)
            raise VendorRequestFailed("Failed to fetch services", vendor=e.vendor_message) from e

    async def _find_service(self, service_id: int) -> ServiceDescriptor:
        # Always live: a quote must never be computed from a stale rate.
        for svc in await self._fetch_services():
            if svc.service_id == service_id:
                return svc
        raise ServiceNotFound("Service not found")

    async def browse_services(
        self,
        q: str = "",
        category: str = "",
        offset: int = 0,
        limit: int = CATALOG_DEFAULT_LIMIT,
    ) -> List[ServiceDescriptor]:
        now = time.monotonic()
        if self._catalog is None or now - self._catalog[0] > self.services_cache_seconds:
            self._catalog = (now, await self._fetch_services())
        services = self._catalog[1]

        if category:
            c = category.strip().lower()
            services = [s for s in services if s.category.lower() == c]
        if q:
            needle = q.strip().lower()
            services = [s for s in services if needle in s.name.lower() or needle in str(s.service_id)]

        off = max(0, int(offset or 0))
        lim = min(CATALOG_MAX_LIMIT, max(1, int(limit or CATALOG_DEFAULT_LIMIT)))
        return services[off:off + lim]

    # -----------------------------
    # Quote preview
    # -----------------------------
    async def preview_quote(self, service_id: Any, quantity: Any) -> Tuple[ServiceDescriptor, Quote]:
        """Non-committing estimate; out-of-range quantities are clamped, not rejected."""
        sid = _positive_int(service_id, "serviceId")
        qty = _positive_int(quantity, "quantity")
        svc = await self._find_service(sid)
        return svc, compute_quote(svc, qty)

    # -----------------------------
    # Order placement
    # -----------------------------
    async def place_order(
        self,
        user_id: int,
        service_id: Any,
        quantity: Any,
        link: Any,
        comments: Optional[str] = None,
    ) -> PlacementResult:
        sid = _positive_int(service_id, "serviceId")
        qty = _positive_int(quantity, "quantity")
        link = _valid_link(link)

        svc = await self._find_service(sid)
        if qty < svc.min or qty > svc.max:
            raise QuantityOutOfRange(svc.min, svc.max)
        quote = compute_quote(svc, qty)
        charge = charge_amount(quote)

        # Once the vendor call is dispatched it must finish; a dropped request
        # must not leave an accepted vendor order without its debit.
        task = asyncio.ensure_future(self._fund_and_dispatch(user_id, svc, quote, charge, link, comments))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            order = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_detached_failure)
            raise
        return PlacementResult(order=order, quote=quote)

    async def _fund_and_dispatch(
        self,
        user_id: int,
        svc: ServiceDescriptor,
        quote: Quote,
        charge: Decimal,
        link: str,
        comments: Optional[str],
    ) -> Order:
        async with self._lock_for(user_id):
            async with self.session_factory() as session:
                balance = await get_balance(session, user_id)
            if balance is None:
                raise UserNotFound("User not found")
            if balance < charge:
                raise InsufficientBalance(f"Insufficient balance. Need {charge}, you have {balance}")

            try:
                api_order_id = await self.adapter.place_order(svc.service_id, quote.quantity, link, comments)
            except VendorError as e:
                raise _vendor_failure(e) from e

            logger.info(
                "Vendor accepted order user=%s service=%s qty=%s vendor_order=%s charge=%s",
                user_id, svc.service_id, quote.quantity, api_order_id, charge,
            )
            return await self._commit(user_id, svc, quote, charge, link, api_order_id)

    async def _commit(
        self,
        user_id: int,
        svc: ServiceDescriptor,
        quote: Quote,
        charge: Decimal,
        link: str,
        api_order_id: str,
    ) -> Order:
        """Debit and insert in a single transaction; runs exactly once."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if not await debit_balance(session, user_id, charge):
                        raise _FundsGone(f"balance below {charge} at commit")
                    order = await insert_order(
                        session,
                        user_id=user_id,
                        service_id=svc.service_id,
                        service_name=svc.name,
                        quantity=quote.quantity,
                        link=link,
                        price=charge,
                        api_order_id=api_order_id,
                        status="Pending",
                    )
            return order
        except (SQLAlchemyError, _FundsGone) as e:
            await self._record_unreconciled(user_id, svc, quote, charge, link, api_order_id, e)
            raise StorageFailure(
                "Order was accepted by the vendor but could not be recorded; support has been notified",
                api_order_id=api_order_id,
            ) from e

    async def _record_unreconciled(
        self,
        user_id: int,
        svc: ServiceDescriptor,
        quote: Quote,
        charge: Decimal,
        link: str,
        api_order_id: str,
        error: Exception,
    ) -> None:
        reason = f"{type(error).__name__}: {error}"[:500]
        logger.critical(
            "Unrecorded vendor order user=%s vendor_order=%s service=%s qty=%s amount=%s link=%s reason=%s",
            user_id, api_order_id, svc.service_id, quote.quantity, charge, link, reason,
        )
        record = {
            "user_id": user_id,
            "api_order_id": api_order_id,
            "service_id": svc.service_id,
            "service_name": svc.name,
            "quantity": quote.quantity,
            "link": link,
            "amount": charge,
            "reason": reason,
        }
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await insert_reconciliation_entry(session, record)
        except SQLAlchemyError:
            logger.exception("Could not store reconciliation entry for vendor order %s", api_order_id)

        await self.alerter.notify(
            f"🚨 Vendor order {api_order_id} for user {user_id} was accepted but not recorded.\n"
            f"Service {svc.service_id} ({svc.name}), qty {quote.quantity}, amount ${charge}.\n"
            f"Link: {link}\nReason: {reason}"
        )

    # -----------------------------
    # Order listing / status refresh
    # -----------------------------
    async def list_orders(
        self, user_id: int, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[Order], bool]:
        page = max(1, int(page or 1))
        limit = min(MAX_PAGE_SIZE, max(1, int(limit or DEFAULT_PAGE_SIZE)))

        async def _op():
            async with self.session_factory() as session:
                return await list_user_orders(session, user_id, page, limit)

        return await run_db_operation(_op)

    async def refresh_statuses(self, user_id: int, ids: Sequence[Any]) -> Dict[str, Dict[str, Any]]:
        """Refresh vendor statuses for the caller's own orders.

        Ids that do not belong to `user_id` are dropped without a trace in the
        result; vendor failures are reported per id.
        """
        if not isinstance(ids, (list, tuple)):
            raise InvalidInput("ids array required")
        wanted: List[str] = []
        for raw in ids:
            s = str(raw).strip() if raw is not None else ""
            if s and s not in wanted:
                wanted.append(s)
        if not wanted:
            raise InvalidInput("ids array required")

        async def _load():
            async with self.session_factory() as session:
                return await find_user_orders_by_api_ids(session, user_id, wanted)

        own = {o.api_order_id for o in await run_db_operation(_load)}
        safe_ids = [i for i in wanted if i in own]

        results: Dict[str, Dict[str, Any]] = {}
        updates: Dict[str, str] = {}
        for api_order_id in safe_ids:
            try:
                status = await self.adapter.get_order_status(api_order_id)
            except VendorError as e:
                results[api_order_id] = {"ok": False, "error": e.vendor_message or "Status fetch failed"}
                continue
            results[api_order_id] = {"ok": True, "status": status}
            updates[api_order_id] = status

        if updates:
            async def _store():
                async with self.session_factory() as session:
                    async with session.begin():
                        for api_order_id, status in updates.items():
                            await update_order_status(session, user_id, api_order_id, status)

            try:
                await run_db_operation(_store)
            except SQLAlchemyError as e:
                logger.exception("Failed to store refreshed statuses for user %s", user_id)
                raise StorageFailure("Failed to refresh statuses") from e

        return results
