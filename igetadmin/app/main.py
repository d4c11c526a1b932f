import asyncio
from collections import OrderedDict
from datetime import datetime
import ipaddress
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Literal, Optional, Tuple

from fastapi import FastAPI, Request, Response, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from .config import Settings, load_env_file
from .models.dto import (
    AfaRegisterBody,
    ApprovalBody,
    BulkApproveBody,
    BulkStatusBody,
    ExclusionToggleBody,
    NetworkToggleBody,
    NewBundleBody,
    OrderFilter,
    PriceUpdateBody,
    PurchaseBody,
    RejectionBody,
    RoleBody,
    SearchBody,
    SelectionBody,
    StatusUpdateBody,
    StockActionBody,
    StockStatusBody,
    SuccessDTO,
    VerifyAccountBody,
    WalletAdjustBody,
    WithdrawBody,
)
from .middleware.request_id import RequestIdMiddleware
from .provider.auth import Session, SessionStore
from .provider.client import IGetClient
from .provider.errors import ClientValidationError, IGetError, NotAuthenticatedError
from .request_context import RequestIdLogFilter
from .services.afa_service import AfaService
from .services.catalog_service import CatalogService, display_price, is_in_stock, savings
from .services.export import XLSX_MEDIA_TYPE, afa_export_filename, orders_export_filename
from .services.my_orders import MyOrdersView
from .services.order_view import OrderReconciliationView
from .services.purchase_service import PurchaseService
from .services.user_service import UserAdminService
from .services.wallet_service import WalletService, quote

load_env_file()
settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdLogFilter())
logger = logging.getLogger(__name__)


class Workspace:
    """Everything one signed-in session works with: client, views and services."""

    def __init__(self, session: Session, settings: Settings, client: Optional[IGetClient] = None):
        self.session = session
        self.client = client or IGetClient(session, settings)
        self.orders = OrderReconciliationView(self.client, settings)
        self.users = UserAdminService(self.client)
        self.catalog = CatalogService(self.client)
        self.wallet = WalletService(self.client)
        self.afa = AfaService(self.client)
        self.purchases = PurchaseService(self.client)
        self.my_orders = MyOrdersView(self.client, self.orders.status_cache)

    async def close(self) -> None:
        await self.orders.close()
        await self.my_orders.close()
        await self.client.aclose()


class WorkspaceRegistry:
    """Workspaces keyed by bearer token.

    A token is checked against the backend before its workspace is kept.
    At most ``max_workspaces`` stay open; the least recently used one is
    closed first, and any left idle past ``workspace_idle_seconds`` is closed
    on the next lookup.
    """

    def __init__(
        self,
        settings: Settings,
        factory: Optional[Callable[[Session], Workspace]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.factory = factory or (lambda session: Workspace(session, settings))
        self.clock = clock
        self._items: "OrderedDict[str, Tuple[Workspace, float]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, session: Session) -> Workspace:
        token = session.require_token()
        async with self._lock:
            await self._evict_idle()
            item = self._items.pop(token, None)
            if item is not None:
                self._items[token] = (item[0], self.clock())
                return item[0]
            ws = self.factory(session)
            try:
                valid = await ws.client.verify_session()
            except BaseException:
                await ws.close()
                raise
            if not valid:
                await ws.close()
                raise NotAuthenticatedError("Invalid token")
            self._items[token] = (ws, self.clock())
            while len(self._items) > self.settings.max_workspaces:
                _, (oldest, _) = self._items.popitem(last=False)
                logger.info("closing least recently used workspace")
                await oldest.close()
            return ws

    async def _evict_idle(self) -> None:
        ttl = self.settings.workspace_idle_seconds
        if not ttl:
            return
        now = self.clock()
        stale = [t for t, (_, seen) in self._items.items() if now - seen > ttl]
        for token in stale:
            ws, _ = self._items.pop(token)
            await ws.close()
        if stale:
            logger.info("closed %d idle workspaces", len(stale))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, token: str) -> bool:
        return token in self._items

    def drop(self, token: str) -> Optional[Workspace]:
        item = self._items.pop(token, None)
        return item[0] if item is not None else None

    async def close(self) -> None:
        items = [ws for ws, _ in self._items.values()]
        self._items.clear()
        for ws in items:
            await ws.close()


registry = WorkspaceRegistry(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await registry.close()


app = FastAPI(title="iGet Admin", version="0.1.0", lifespan=lifespan)
SERVER_STARTED_AT = datetime.utcnow()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)
app.add_middleware(GZipMiddleware, minimum_size=500)

app.add_middleware(RequestIdMiddleware)


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def get_session(request: Request) -> Session:
    # Bearer header first; the persisted session file is opt-in and loopback only
    auth = request.headers.get("Authorization")
    if auth and auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
        if token:
            return Session(token=token)
    host = request.client.host if request.client else None
    if not settings.allow_session_file or not _is_loopback(host):
        raise NotAuthenticatedError()
    session = Session.load(SessionStore(settings.session_file))
    if not session.authenticated:
        raise NotAuthenticatedError()
    return session


async def get_workspace(session: Session = Depends(get_session)) -> Workspace:
    return await registry.get(session)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": "invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(IGetError)
async def handle_iget_error(request: Request, exc: IGetError):
    return JSONResponse(status_code=exc.http_status, content={"success": False, "message": exc.msg})


@app.exception_handler(Exception)
async def handle_generic_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal Server Error"})


# ===== Session =====
@app.get("/session/verify")
async def verify_session(session: Session = Depends(get_session)):
    token = session.require_token()
    if token not in registry:
        try:
            await registry.get(session)
        except NotAuthenticatedError:
            return {"success": False}
        return {"success": True}
    ws = await registry.get(session)
    valid = await ws.client.verify_session()
    if not valid:
        dropped = registry.drop(token)
        if dropped is not None:
            await dropped.close()
    return {"success": valid}


@app.get("/session/permissions")
async def session_permissions(ws: Workspace = Depends(get_workspace)):
    data = await ws.client.my_permissions()
    return {"success": True, "isAdmin": ws.session.is_admin, **data}


# ===== Admin orders =====
@app.get("/admin/orders")
async def orders_snapshot(ws: Workspace = Depends(get_workspace)):
    if not ws.orders.loaded:
        await ws.orders.load_page(1)
    return ws.orders.snapshot()


@app.post("/admin/orders/reload")
async def orders_reload(ws: Workspace = Depends(get_workspace)):
    await ws.orders.refresh()
    return ws.orders.snapshot()


@app.post("/admin/orders/load-more")
async def orders_load_more(ws: Workspace = Depends(get_workspace)):
    await ws.orders.load_more()
    return ws.orders.snapshot()


@app.put("/admin/orders/page/{page}")
async def orders_set_page(page: int, ws: Workspace = Depends(get_workspace)):
    ws.orders.set_page(page)
    return ws.orders.snapshot()


@app.post("/admin/orders/search")
async def orders_search(body: SearchBody, ws: Workspace = Depends(get_workspace)):
    # Server searches are debounced; the refetch lands after this response
    ws.orders.set_query(body.query, body.serverSearch)
    return ws.orders.snapshot()


@app.put("/admin/orders/filters")
async def orders_filters(body: OrderFilter, ws: Workspace = Depends(get_workspace)):
    await ws.orders.set_filters(**body.model_dump(exclude_unset=True))
    return ws.orders.snapshot()


@app.post("/admin/orders/filters/reset")
async def orders_reset_filters(ws: Workspace = Depends(get_workspace)):
    await ws.orders.reset_filters()
    return ws.orders.snapshot()


@app.post("/admin/orders/exclusions")
async def orders_toggle_exclusion(body: ExclusionToggleBody, ws: Workspace = Depends(get_workspace)):
    await ws.orders.toggle_exclusion(body.kind, body.value)
    return ws.orders.snapshot()


@app.post("/admin/orders/selection")
async def orders_selection(body: SelectionBody, ws: Workspace = Depends(get_workspace)):
    view = ws.orders
    if body.mode == "toggle":
        for oid in body.orderIds:
            view.toggle_select(oid)
    elif body.mode == "set":
        view.set_selection(body.orderIds)
    elif body.mode == "all":
        view.select_all_visible()
    else:
        view.clear_selection()
    return {"success": True, "selected": view.selected_ids}


@app.put("/admin/orders/bulk-status")
async def orders_bulk_status(body: BulkStatusBody, ws: Workspace = Depends(get_workspace)):
    modified = await ws.orders.bulk_update_status(body.status, body.senderID)
    return {"success": True, "modified": modified, "message": ws.orders.success_message}


@app.put("/admin/orders/{order_id}/status")
async def orders_row_status(order_id: str, body: StatusUpdateBody, ws: Workspace = Depends(get_workspace)):
    order = await ws.orders.update_status(order_id, body.status, body.senderID)
    return {"success": True, "message": ws.orders.success_message, "order": ws.orders.row(order)}


@app.post("/admin/orders/external-status")
async def orders_check_visible(ws: Workspace = Depends(get_workspace)):
    updated = await ws.orders.check_visible_external_statuses()
    return {"success": True, "updated": updated, "orders": ws.orders.snapshot()["orders"]}


@app.post("/admin/orders/{order_id}/external-status")
async def orders_check_one(order_id: str, ws: Workspace = Depends(get_workspace)):
    if order_id not in ws.orders.store:
        raise ClientValidationError("Order is not loaded")
    record = await ws.orders.check_external_status(order_id)
    order = ws.orders.store.get(order_id)
    return {
        "success": record is not None,
        "externalStatus": jsonable_encoder(record) if record is not None else None,
        "order": ws.orders.row(order),
    }


@app.get("/admin/orders/export")
async def orders_export(ws: Workspace = Depends(get_workspace)):
    data = await ws.orders.export_xlsx()
    return Response(
        content=data,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{orders_export_filename()}"'},
    )


@app.post("/admin/orders/dismiss-error")
async def orders_dismiss_error(ws: Workspace = Depends(get_workspace)):
    ws.orders.dismiss_error()
    return SuccessDTO()


# ===== AFA =====
@app.post("/afa/register")
async def afa_register(body: AfaRegisterBody, ws: Workspace = Depends(get_workspace)):
    data = await ws.afa.register(body.firstName, body.lastName, body.phoneNumber, body.price)
    return {"success": True, "data": data}


def _apply_afa_query(svc: AfaService, status: str, search: str, sort: Optional[str], direction: Optional[str]) -> None:
    svc.status = status
    svc.search = search
    if sort:
        svc.sort_field = sort
    if direction:
        svc.sort_direction = direction


@app.get("/admin/afa/registrations")
async def afa_registrations(
    status: str = "all",
    search: str = "",
    sort: Optional[Literal["createdAt", "price", "capacity", "fullName"]] = None,
    direction: Optional[Literal["asc", "desc"]] = None,
    ws: Workspace = Depends(get_workspace),
):
    if not await ws.afa.load():
        raise IGetError(ws.afa.error or "Failed to fetch registrations", http_status=502)
    _apply_afa_query(ws.afa, status, search, sort, direction)
    items = ws.afa.visible()
    return {"success": True, "count": len(items), "data": jsonable_encoder([r.model_dump(by_alias=True) for r in items])}


@app.get("/admin/afa/registrations/export")
async def afa_export(
    status: str = "all",
    search: str = "",
    sort: Optional[Literal["createdAt", "price", "capacity", "fullName"]] = None,
    direction: Optional[Literal["asc", "desc"]] = None,
    ws: Workspace = Depends(get_workspace),
):
    if not ws.afa.registrations and not await ws.afa.load():
        raise IGetError(ws.afa.error or "Failed to fetch registrations", http_status=502)
    _apply_afa_query(ws.afa, status, search, sort, direction)
    return Response(
        content=ws.afa.export_csv(),
        media_type="text/csv;charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{afa_export_filename()}"'},
    )


# ===== Admin users =====
async def _users(ws: Workspace) -> UserAdminService:
    if not ws.users.users:
        await ws.users.load()
    return ws.users


@app.get("/admin/users")
async def users_list(
    page: int = 1,
    search: str = "",
    approvalStatus: str = "all",
    ws: Workspace = Depends(get_workspace),
):
    if not await ws.users.load(page=page, search=search, approval_status=approvalStatus):
        raise IGetError(ws.users.error or "Failed to fetch users", http_status=502)
    return {
        "success": True,
        "users": jsonable_encoder([u.model_dump(by_alias=True) for u in ws.users.users]),
        "pagination": ws.users.pagination.model_dump(),
    }


@app.get("/admin/users/stats")
async def users_stats(ws: Workspace = Depends(get_workspace)):
    return {"success": True, "data": await ws.users.load_stats()}


@app.get("/admin/users/{user_id}/transactions")
async def users_transactions(user_id: str, ws: Workspace = Depends(get_workspace)):
    return {"success": True, "data": await ws.users.transactions(user_id)}


@app.post("/admin/users/bulk-approve")
async def users_bulk_approve(body: BulkApproveBody, ws: Workspace = Depends(get_workspace)):
    count = await ws.users.bulk_approve(body.userIds, body.notes)
    return {"success": True, "approved": count}


def _user_out(user) -> Optional[dict]:
    if user is None:
        return None
    return jsonable_encoder(user.model_dump(by_alias=True))


@app.post("/admin/users/{user_id}/approve")
async def users_approve(user_id: str, body: ApprovalBody, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.approve(user_id, body.notes))}


@app.post("/admin/users/{user_id}/reject")
async def users_reject(user_id: str, body: RejectionBody, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.reject(user_id, body.reason))}


@app.delete("/admin/users/{user_id}")
async def users_delete(user_id: str, ws: Workspace = Depends(get_workspace)):
    await ws.users.delete(user_id)
    return SuccessDTO()


@app.patch("/admin/users/{user_id}/status")
async def users_toggle_status(user_id: str, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.toggle_status(user_id))}


@app.patch("/admin/users/{user_id}/role")
async def users_change_role(user_id: str, body: RoleBody, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.change_role(user_id, body.role))}


@app.post("/admin/users/{user_id}/wallet/deposit")
async def users_deposit(user_id: str, body: WalletAdjustBody, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.deposit(user_id, body.amount, body.description))}


@app.post("/admin/users/{user_id}/wallet/debit")
async def users_debit(user_id: str, body: WalletAdjustBody, ws: Workspace = Depends(get_workspace)):
    svc = await _users(ws)
    return {"success": True, "user": _user_out(await svc.debit(user_id, body.amount, body.description))}


# ===== Catalog / stock / pricing =====
def _bundle_out(bundle) -> dict:
    data = jsonable_encoder(bundle.model_dump(by_alias=True))
    data["inStock"] = is_in_stock(bundle)
    data["displayPrice"] = jsonable_encoder(display_price(bundle))
    data["savings"] = savings(bundle)
    return data


@app.get("/admin/bundles")
async def bundles_admin(search: str = "", ws: Workspace = Depends(get_workspace)):
    await ws.catalog.load()
    grouped = ws.catalog.search(search)
    return {
        "success": True,
        "data": {btype: [_bundle_out(b) for b in items] for btype, items in grouped.items()},
        "error": ws.catalog.error,
    }


@app.post("/admin/bundles")
async def bundles_add(body: NewBundleBody, ws: Workspace = Depends(get_workspace)):
    items = await ws.catalog.add_bundle(body.type, body.capacity, body.price)
    return {"success": True, "message": ws.catalog.success_message, "data": [_bundle_out(b) for b in items]}


@app.delete("/admin/bundles/{bundle_id}")
async def bundles_delete(bundle_id: str, ws: Workspace = Depends(get_workspace)):
    await ws.catalog.delete_bundle(bundle_id)
    return {"success": True, "message": ws.catalog.success_message}


@app.put("/admin/bundles/{bundle_id}/prices")
async def bundles_prices(bundle_id: str, body: PriceUpdateBody, ws: Workspace = Depends(get_workspace)):
    bundle = await ws.catalog.update_prices(bundle_id, body.model_dump(exclude_none=True))
    return {"success": True, "message": ws.catalog.success_message, "data": _bundle_out(bundle)}


@app.put("/admin/bundles/{bundle_id}/stock")
async def bundles_stock(bundle_id: str, body: StockActionBody, ws: Workspace = Depends(get_workspace)):
    data = await ws.catalog.stock_action(bundle_id, body.action, body.value, body.reason)
    return {"success": True, "message": ws.catalog.success_message, "data": data}


@app.put("/admin/bundles/{bundle_id}/stock-status")
async def bundles_stock_status(bundle_id: str, body: StockStatusBody, ws: Workspace = Depends(get_workspace)):
    bundle = await ws.catalog.toggle_stock(bundle_id, currently_in_stock=not body.inStock)
    return {"success": True, "message": ws.catalog.success_message, "data": _bundle_out(bundle)}


@app.get("/admin/bundles/{bundle_id}/stock-history")
async def bundles_stock_history(bundle_id: str, ws: Workspace = Depends(get_workspace)):
    return {"success": True, "data": await ws.catalog.stock_history(bundle_id)}


@app.get("/admin/networks")
async def networks_list(ws: Workspace = Depends(get_workspace)):
    items = await ws.catalog.load_networks()
    return {"success": True, "data": [n.model_dump() for n in items]}


@app.post("/admin/networks/initialize")
async def networks_initialize(ws: Workspace = Depends(get_workspace)):
    items = await ws.catalog.initialize_networks()
    return {"success": True, "data": [n.model_dump() for n in items]}


@app.put("/admin/networks/{network_type}")
async def networks_set(network_type: str, body: NetworkToggleBody, ws: Workspace = Depends(get_workspace)):
    items = await ws.catalog.set_network(network_type, body.isAvailable)
    return {"success": True, "data": [n.model_dump() for n in items]}


# ===== Purchases =====
@app.get("/bundles")
async def bundles_available(type: Optional[str] = None, ws: Workspace = Depends(get_workspace)):
    bundles = await ws.catalog.available_bundles(type)
    return {"success": True, "data": [_bundle_out(b) for b in bundles]}


async def _find_bundle(ws: Workspace, bundle_id: str):
    for b in await ws.catalog.available_bundles():
        if b.id == bundle_id:
            return b
    raise IGetError("Bundle not found", http_status=404)


@app.post("/purchase/mtn")
async def purchase_mtn(body: PurchaseBody, ws: Workspace = Depends(get_workspace)):
    bundle = await _find_bundle(ws, body.bundleId)
    return {"success": True, "data": await ws.purchases.buy_mtn(bundle, body.recipientNumber)}


@app.post("/purchase/telecel")
async def purchase_telecel(body: PurchaseBody, ws: Workspace = Depends(get_workspace)):
    bundle = await _find_bundle(ws, body.bundleId)
    return {"success": True, "data": await ws.purchases.buy_telecel(bundle, body.recipientNumber)}


@app.get("/orders/mine")
async def my_orders(phone: str = "", ws: Workspace = Depends(get_workspace)):
    view = ws.my_orders
    if not await view.load():
        raise IGetError(view.error or "Failed to fetch orders", http_status=502)
    view.search_phone = phone
    return {
        "success": True,
        "data": [
            {**jsonable_encoder(o.model_dump(by_alias=True)), "displayedStatus": view.status_of(o)}
            for o in view.filtered()
        ],
    }


# ===== Wallet =====
@app.get("/wallet/balance")
async def wallet_balance(ws: Workspace = Depends(get_workspace)):
    return {"success": True, "balance": await ws.wallet.load_balance()}


@app.get("/wallet/banks")
async def wallet_banks(ws: Workspace = Depends(get_workspace)):
    banks = await ws.wallet.load_banks()
    return {"success": True, "data": [b.model_dump() for b in banks], "error": ws.wallet.error}


@app.post("/wallet/verify-account")
async def wallet_verify(body: VerifyAccountBody, ws: Workspace = Depends(get_workspace)):
    name = await ws.wallet.verify_account(body.accountNumber, body.bankCode)
    return {"success": True, "accountName": name}


@app.get("/wallet/withdrawal-quote")
async def wallet_quote(amount: str = ""):
    q = quote(amount)
    return {"amount": str(q.amount), "fee": f"{q.fee:.2f}", "net": f"{q.net:.2f}"}


@app.post("/wallet/withdraw")
async def wallet_withdraw(body: WithdrawBody, ws: Workspace = Depends(get_workspace)):
    await ws.wallet.load_balance()
    data = await ws.wallet.withdraw(body.amount, body.accountNumber, body.bankCode, body.reason)
    return {"success": True, "data": data}


# ===== Health =====
@app.get("/health")
async def health(response: Response):
    return Response(status_code=204, headers={"Cache-Control": "no-store"})


@app.head("/health")
async def health_head(response: Response):
    return Response(status_code=204, headers={"Cache-Control": "no-store"})


@app.get("/status")
async def status():
    now = datetime.utcnow()
    return {
        "status": "ok",
        "version": app.version,
        "time": now.isoformat() + "Z",
        "uptimeSeconds": int((now - SERVER_STARTED_AT).total_seconds()),
        "sessions": len(registry),
    }
