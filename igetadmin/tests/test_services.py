import asyncio
import unittest
from decimal import Decimal
from typing import Any, Dict, List

import httpx

from igetadmin.app.config import Settings
from igetadmin.app.models.dto import Bundle
from igetadmin.app.provider.auth import Session
from igetadmin.app.provider.client import IGetClient
from igetadmin.app.provider.errors import ApiError, ClientValidationError
from igetadmin.app.provider.hubnet import TransactionChecker
from igetadmin.app.services.afa_service import AfaService, refine_registrations
from igetadmin.app.services.catalog_service import (
    CatalogService,
    display_price,
    is_in_stock,
    savings,
    search_bundles,
    stock_request,
)
from igetadmin.app.services.my_orders import MyOrdersView
from igetadmin.app.services.purchase_service import PurchaseService
from igetadmin.app.services.status_poller import CheckState, ExternalStatusCache
from igetadmin.app.services.user_service import UserAdminService
from igetadmin.app.services.wallet_service import WalletService, quote


class RoutedClient:
    def __init__(self, routes: Dict[Any, Any]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []

    async def request(self, method: str, url: str, params=None, json=None, headers=None):
        req = httpx.Request(method, url)
        self.calls.append({"method": method, "path": req.url.path, "params": params, "json": json})
        status, body = self.routes.get((method, req.url.path), (404, {"message": "no route"}))
        return httpx.Response(status, json=body, request=req)

    async def aclose(self):
        pass


def _client(routes: Dict[Any, Any]):
    settings = Settings(api_base_url="https://api.test", local_api_base_url="http://local.test", status_check_delay_seconds=0)
    client = IGetClient(Session(token="tok"), settings)
    stub = RoutedClient(routes)
    client.http._client = stub  # type: ignore
    return client, stub


OK = (200, {"success": True})

USERS = {
    "users": [
        {"_id": "u1", "username": "ama", "approvalStatus": "pending", "isActive": False, "wallet": {"balance": 50}},
        {"_id": "u2", "username": "kofi", "approvalStatus": "approved", "isActive": True, "wallet": {"balance": 10}},
        {"_id": "u3", "username": "esi", "approvalStatus": "pending", "isActive": False},
    ],
    "pagination": {"total": 3, "page": 1, "totalPages": 1},
}


class TestUserAdminService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.client, self.stub = _client({
            ("GET", "/api/admin/users"): (200, USERS),
            ("GET", "/api/admin/users/approval-stats"): (200, {"data": {"pending": 2}}),
            ("POST", "/api/admin/users/u1/approve"): OK,
            ("POST", "/api/admin/users/u1/reject"): OK,
            ("POST", "/api/admin/users/u9/approve"): OK,
            ("POST", "/api/admin/users/u9/reject"): OK,
            ("POST", "/api/admin/users/bulk-approve"): OK,
            ("POST", "/api/admin/users/u1/wallet/deposit"): OK,
            ("POST", "/api/admin/users/u2/wallet/debit"): OK,
            ("PATCH", "/api/admin/users/u2/role"): OK,
            ("PATCH", "/api/admin/users/u2/status"): OK,
            ("PATCH", "/api/admin/users/u3/status"): (500, {"message": "boom"}),
        })
        self.svc = UserAdminService(self.client)
        self.assertTrue(await self.svc.load(search="a", approval_status="pending"))

    async def test_load_sends_filters(self):
        params = self.stub.calls[0]["params"]
        self.assertEqual(params["search"], "a")
        self.assertEqual(params["approvalStatus"], "pending")
        self.assertEqual(len(self.svc.users), 3)

    async def test_approve_and_reject_patch_local_row(self):
        user = await self.svc.approve("u1", "ok")
        self.assertEqual(user.approvalStatus, "approved")
        self.assertTrue(user.isActive)
        self.assertEqual(self.svc.stats, {"pending": 2})
        with self.assertRaises(ClientValidationError):
            await self.svc.reject("u1", "  ")
        self.assertEqual(self.svc.error, "Rejection reason is required")
        user = await self.svc.reject("u1", "bad id")
        self.assertEqual(user.approvalStatus, "rejected")
        self.assertFalse(user.isActive)

    async def test_decision_on_user_outside_loaded_page(self):
        self.assertIsNone(await self.svc.approve("u9"))
        self.assertIsNone(await self.svc.reject("u9", "duplicate account"))
        self.assertIsNone(self.svc.error)
        self.assertEqual([u.id for u in self.svc.users], ["u1", "u2", "u3"])

    async def test_select_all_only_pending(self):
        self.assertEqual(self.svc.select_all(), ["u1", "u3"])
        self.assertEqual(self.svc.select_all(False), [])
        with self.assertRaises(ClientValidationError):
            await self.svc.bulk_approve()
        self.svc.select_all()
        self.assertEqual(await self.svc.bulk_approve(), 2)
        bulk = [c for c in self.stub.calls if c["path"].endswith("bulk-approve")][0]
        self.assertEqual(bulk["json"]["userIds"], ["u1", "u3"])
        self.assertEqual(self.svc.selected, [])

    async def test_wallet_adjustments(self):
        user = await self.svc.deposit("u1", "25.5")
        self.assertEqual(user.wallet.balance, 75.5)
        with self.assertRaises(ClientValidationError):
            await self.svc.deposit("u1", "-3")
        with self.assertRaises(ClientValidationError):
            await self.svc.debit("u2", 11)
        self.assertEqual(self.svc.error, "Insufficient wallet balance")
        user = await self.svc.debit("u2", 4)
        self.assertEqual(user.wallet.balance, 6)

    async def test_role_and_status(self):
        with self.assertRaises(ClientValidationError):
            await self.svc.change_role("u2", "")
        self.assertEqual((await self.svc.change_role("u2", "agent")).role, "agent")
        self.assertFalse((await self.svc.toggle_status("u2")).isActive)

    async def test_backend_failure_leaves_row(self):
        with self.assertRaises(ApiError):
            await self.svc.toggle_status("u3")
        self.assertEqual(self.svc.error, "boom")
        self.assertFalse(self.svc.get("u3").isActive)


class TestCatalog(unittest.IsolatedAsyncioTestCase):
    def test_stock_and_price_helpers(self):
        b = Bundle.model_validate({"_id": "b1", "price": "10", "userPrice": "8", "capacity": 1000})
        self.assertTrue(is_in_stock(b))
        self.assertEqual(display_price(b), Decimal("8"))
        self.assertEqual(savings(b), {"amount": "2.00", "percent": "20.0"})
        self.assertIsNone(savings(Bundle.model_validate({"_id": "b2", "price": "10"})))
        self.assertEqual(display_price(Bundle.model_validate({"_id": "b2", "price": "10"})), Decimal("10"))
        self.assertFalse(is_in_stock(Bundle.model_validate({"_id": "b3", "stockInfo": {"isOutOfStock": True}})))
        self.assertFalse(is_in_stock(Bundle.model_validate({"_id": "b4", "isInStock": False})))
        self.assertEqual([x.id for x in search_bundles([b], "100")], ["b1"])
        self.assertEqual(search_bundles([b], "xyz"), [])

    def test_stock_request_validation(self):
        self.assertEqual(stock_request("restock", "5")["payload"], {"units": 5, "reason": "Manual restock"})
        self.assertEqual(stock_request("adjust", "-2")["payload"]["adjustment"], -2)
        self.assertEqual(stock_request("set", 0)["endpoint"], "set")
        self.assertEqual(stock_request("threshold", "3")["endpoint"], "low-threshold")
        for action, value in (("restock", 0), ("adjust", 0), ("set", -1), ("threshold", "x"), ("melt", 1)):
            with self.assertRaises(ClientValidationError):
                stock_request(action, value)

    async def test_price_update_and_stock_actions(self):
        client, stub = _client({
            ("GET", "/api/iget/bundle/mtnup2u"): (200, {"data": [{"_id": "b1", "type": "mtnup2u", "price": 10, "capacity": 1000,
                                                               "stockInfo": {"available": 3}}]}),
            ("PUT", "/api/iget/b1"): OK,
            ("PUT", "/api/iget/stock/b1/restock"): (200, {"success": True, "data": {"stockUnits": 8, "available": 8}}),
            ("PUT", "/api/iget/stock/b1/out-of-stock"): OK,
        })
        svc = CatalogService(client)
        await svc.load(["mtnup2u"])
        with self.assertRaises(ClientValidationError):
            await svc.update_prices("b1", {"standard": "12", "agent": "-1"})
        self.assertEqual(svc.error, "Invalid price for agent role")
        bundle = await svc.update_prices("b1", {"standard": "12", "agent": "11"})
        put = [c for c in stub.calls if c["path"] == "/api/iget/b1"][0]["json"]
        self.assertEqual(put["price"], 12.0)
        self.assertEqual(put["rolePricing"], {"admin": 12.0, "user": 12.0, "agent": 11.0, "Editor": 12.0})
        self.assertEqual(bundle.price, Decimal("12"))

        await svc.stock_action("b1", "restock", "5")
        self.assertEqual(svc.find("b1").stockUnits, 8)
        self.assertEqual(svc.find("b1").stockInfo.available, 8)

        bundle = await svc.toggle_stock("b1", currently_in_stock=True)
        self.assertFalse(is_in_stock(bundle))
        self.assertEqual(svc.success_message, "Bundle marked as out of stock")

    async def test_add_and_deactivate_bundle(self):
        client, stub = _client({
            ("GET", "/api/iget/bundle/AT-ishare"): (200, {"data": [{"_id": "a1", "type": "AT-ishare", "price": 5, "capacity": 1000}]}),
            ("POST", "/api/iget/addbundle"): (201, {"success": True, "data": {"_id": "a1"}}),
            ("DELETE", "/api/iget/a1"): OK,
        })
        svc = CatalogService(client)
        with self.assertRaises(ClientValidationError):
            await svc.add_bundle("AT-ishare", "", "5")
        self.assertEqual(svc.error, "All fields are required")
        items = await svc.add_bundle("AT-ishare", "1000", "5")
        post = [c for c in stub.calls if c["method"] == "POST"][0]["json"]
        self.assertEqual(post, {"type": "AT-ishare", "capacity": 1000, "price": 5.0})
        self.assertEqual([b.id for b in items], ["a1"])
        await svc.delete_bundle("a1")
        self.assertEqual(svc.bundles["AT-ishare"], [])
        self.assertEqual(svc.success_message, "Bundle deactivated successfully")


class TestPurchases(unittest.IsolatedAsyncioTestCase):
    async def test_mtn_by_id_and_telecel_by_fields(self):
        client, stub = _client({("POST", "/api/orders/placeorder"): (200, {"success": True, "data": {"orderReference": "R1"}})})
        svc = PurchaseService(client)
        mtn = Bundle.model_validate({"_id": "b1", "type": "mtnup2u", "price": 10})
        self.assertEqual((await svc.buy_mtn(mtn, " 0551234567 "))["orderReference"], "R1")
        self.assertEqual(stub.calls[-1]["json"], {"bundleId": "b1", "recipientNumber": "0551234567"})

        tel = Bundle.model_validate({"_id": "b2", "capacity": 5000, "price": "20", "userPrice": "18"})
        await svc.buy_telecel(tel, "0201234567")
        self.assertEqual(stub.calls[-1]["json"], {
            "recipientNumber": "0201234567", "capacity": 5000, "price": 18.0, "bundleType": "Telecel-5959",
        })

    async def test_rejected_locally(self):
        client, stub = _client({})
        svc = PurchaseService(client)
        with self.assertRaises(ClientValidationError):
            await svc.buy_mtn(Bundle.model_validate({"_id": "b1"}), "")
        with self.assertRaises(ClientValidationError) as ctx:
            await svc.buy_mtn(Bundle.model_validate({"_id": "b1", "isInStock": False}), "0551234567")
        self.assertEqual(ctx.exception.msg, "This bundle is currently out of stock")
        self.assertEqual(stub.calls, [])


class TestWallet(unittest.IsolatedAsyncioTestCase):
    def test_quote_fee_rules(self):
        q = quote("100")
        self.assertEqual((q.fee, q.net), (Decimal("2.50"), Decimal("97.50")))
        q = quote(20)
        self.assertEqual((q.fee, q.net), (Decimal("1.00"), Decimal("19.00")))
        q = quote("0.5")
        self.assertEqual(q.net, Decimal("0.00"))
        self.assertEqual(quote("abc").amount, Decimal("0.00"))

    async def test_withdraw_flow(self):
        client, stub = _client({
            ("GET", "/api/iget/balance"): (200, {"data": {"balance": 150}}),
            ("POST", "/api/depsoite/verify-account"): (200, {"success": True, "data": {"accountName": "AMA MENSAH"}}),
            ("POST", "/api/depsoite/withdraw"): (200, {"success": True, "data": {"reference": "W1", "newWalletBalance": 50}}),
        })
        svc = WalletService(client)
        await svc.load_balance()
        with self.assertRaises(ClientValidationError):
            await svc.withdraw("100", "0123", "GCB")
        self.assertEqual(svc.error, "Please verify your account details first")
        with self.assertRaises(ClientValidationError):
            await svc.withdraw("500", "0123", "GCB")
        self.assertEqual(svc.error, "Insufficient wallet balance")
        self.assertEqual(await svc.verify_account("0123", "GCB"), "AMA MENSAH")
        with self.assertRaises(ClientValidationError):
            await svc.withdraw("1", "0123", "GCB")
        self.assertEqual(svc.error, "Amount too small after deducting withdrawal fee")
        data = await svc.withdraw("100", "0123", "GCB")
        self.assertEqual(data["reference"], "W1")
        self.assertEqual(svc.balance, 50.0)
        sent = stub.calls[-1]["json"]
        self.assertEqual(sent["accountName"], "AMA MENSAH")
        self.assertEqual(sent["reason"], "Wallet withdrawal")
        self.assertIsNone(svc.verified_account)


REGS = [
    {"_id": "r1", "orderReference": "AFA-1", "phoneNumber": "0241", "price": 20, "capacity": 1, "status": "pending",
     "createdAt": "2024-01-02T00:00:00Z", "metadata": {"fullName": "Yaw Boateng", "location": "Kumasi"}},
    {"_id": "r2", "orderReference": "AFA-2", "phoneNumber": "0552", "price": 25, "capacity": 2, "status": "completed",
     "createdAt": "2024-01-03T00:00:00Z", "metadata": {"fullName": "ama owusu", "idNumber": "GHA-77"}},
    {"_id": "r3", "orderReference": "AFA-3", "phoneNumber": "0203", "price": 15, "capacity": 3, "status": "pending",
     "createdAt": "2024-01-01T00:00:00Z", "metadata": {}},
]


class TestAfa(unittest.IsolatedAsyncioTestCase):
    async def test_register_joins_names(self):
        client, stub = _client({("POST", "/api/afa/register"): (200, {"success": True, "data": {"registration": {}}})})
        await AfaService(client).register("Ama", "Mensah", "0241112222")
        self.assertEqual(stub.calls[0]["json"], {"fullName": "Ama Mensah", "phoneNumber": "0241112222", "price": 20.0})
        with self.assertRaises(ClientValidationError):
            await AfaService(client).register("Ama", "", "0241")

    async def test_list_filter_search_sort(self):
        client, _ = _client({("GET", "/api/afa/registrations"): (200, {"success": True, "data": REGS})})
        svc = AfaService(client)
        self.assertTrue(await svc.load())
        self.assertEqual([r.id for r in svc.visible()], ["r2", "r1", "r3"])
        svc.status = "pending"
        self.assertEqual([r.id for r in svc.visible()], ["r1", "r3"])
        svc.status = "all"
        svc.search = "kumasi"
        self.assertEqual([r.id for r in svc.visible()], ["r1"])
        svc.search = "gha-77"
        self.assertEqual([r.id for r in svc.visible()], ["r2"])
        svc.search = ""
        svc.sort_by("price")
        self.assertEqual(svc.sort_direction, "asc")
        self.assertEqual([r.id for r in svc.visible()], ["r3", "r1", "r2"])
        svc.sort_by("price")
        self.assertEqual([r.id for r in svc.visible()], ["r2", "r1", "r3"])
        svc.sort_by("fullName")
        self.assertEqual([r.id for r in svc.visible()], ["r3", "r2", "r1"])
        self.assertEqual(len(svc.export_csv().split("\n")), 4)

    def test_unknown_sort_field_falls_back_to_date(self):
        from igetadmin.app.models.dto import AfaRegistration
        regs = [AfaRegistration.model_validate(r) for r in REGS]
        self.assertEqual([r.id for r in refine_registrations(regs, sort_field="bogus")], ["r2", "r1", "r3"])


class TestMyOrders(unittest.IsolatedAsyncioTestCase):
    async def test_load_search_and_auto_check(self):
        client, stub = _client({
            ("GET", "/api/orders/my-orders"): (200, {"success": True, "data": [
                {"_id": "o1", "recipientNumber": "0551234567", "bundleType": "mtnup2u", "orderReference": "R1", "status": "processing"},
                {"_id": "o2", "recipientNumber": "0209999999", "bundleType": "AT-ishare", "status": "completed"},
            ]}),
            ("GET", "/live/api/context/business/transaction-checker"): (200, {"status": "success", "data": {"status": "Delivered"}}),
        })
        view = MyOrdersView(client)
        self.assertTrue(await view.load())
        task = view.scheduler.task("my-orders-status")
        self.assertIsNotNone(task)
        await task
        checks = [c for c in stub.calls if c["path"].endswith("transaction-checker")]
        self.assertEqual(len(checks), 1)
        self.assertEqual(view.status_of(view.orders[0]), "completed")
        self.assertEqual(view.orders[0].status, "processing")
        view.search_phone = "0209"
        self.assertEqual([o.id for o in view.filtered()], ["o2"])

    async def test_shared_cache_is_reused(self):
        client, _ = _client({})
        cache = ExternalStatusCache(checker=None, delay_seconds=0)  # type: ignore[arg-type]
        self.assertIs(MyOrdersView(client, cache).status_cache, cache)

    async def test_listing_does_not_wait_for_paced_checks(self):
        client, stub = _client({
            ("GET", "/api/orders/my-orders"): (200, {"success": True, "data": [
                {"_id": "o1", "recipientNumber": "0551234567", "bundleType": "mtnup2u", "orderReference": "R1"},
                {"_id": "o2", "recipientNumber": "0551234568", "bundleType": "mtnup2u", "orderReference": "R2"},
            ]}),
            ("GET", "/live/api/context/business/transaction-checker"): (200, {"status": "success", "data": {"status": "Delivered"}}),
        })
        cache = ExternalStatusCache(TransactionChecker(client.http), delay_seconds=30)
        view = MyOrdersView(client, cache)
        self.assertTrue(await view.load())
        self.assertEqual(len(view.orders), 2)
        self.assertEqual([c for c in stub.calls if c["path"].endswith("transaction-checker")], [])
        for _ in range(50):
            await asyncio.sleep(0)
            if cache.state("o1") == CheckState.SUCCESS:
                break
        self.assertEqual(cache.state("o1"), CheckState.SUCCESS)
        await view.close()
        self.assertEqual(cache.state("o2"), CheckState.IDLE)
