import unittest
from typing import Any, Dict, List

import httpx

from igetadmin.app.config import Settings
from igetadmin.app.models.dto import Exclusions, OrderFilter
from igetadmin.app.provider.auth import Session
from igetadmin.app.provider.client import IGetClient, parse_orders_page, parse_users_page
from igetadmin.app.provider.errors import ApiError
from igetadmin.app.provider.hubnet import TransactionChecker
from igetadmin.app.services.order_view import OrderReconciliationView


class RoutedClient:
    """Async stand-in for httpx.AsyncClient keyed by (method, path)."""

    def __init__(self, routes: Dict[Any, Any]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []

    async def request(self, method: str, url: str, params=None, json=None, headers=None):
        req = httpx.Request(method, url)
        self.calls.append({"method": method, "path": req.url.path, "params": params, "json": json, "headers": headers})
        status, body = self.routes.get((method, req.url.path), (404, {"message": "no route"}))
        return httpx.Response(status, json=body, request=req)

    async def aclose(self):
        pass


def _client(routes: Dict[Any, Any], token: str = "tok"):
    settings = Settings(
        api_base_url="https://api.test",
        local_api_base_url="http://local.test",
        hubnet_checker_url="https://checker.test/tx",
        hubnet_token="hub",
    )
    client = IGetClient(Session(token=token), settings)
    stub = RoutedClient(routes)
    client.http._client = stub  # type: ignore
    return client, stub


ODD_ORDERS = [
    {"_id": "a1", "user": "64f0c0ffee", "recipientNumber": 233541234567, "orderReference": 99001,
     "bundleType": "mtnup2u", "status": "pending"},
    {"_id": "a2", "capacity": "1GB", "createdAt": "yesterday", "status": None, "metadata": []},
    {"_id": {"$oid": "a3"}, "status": "pending"},
]


class TestParsing(unittest.TestCase):
    def test_orders_page_envelope(self):
        body = {
            "success": True,
            "data": [{"_id": "a", "status": "pending"}, {"id": "b"}, {"status": "no id"}],
            "total": "250",
            "currentPage": 1,
            "pages": 3,
        }
        page = parse_orders_page(body, 1)
        self.assertEqual([o.id for o in page.orders], ["a", "b"])
        self.assertEqual(page.total, 250)
        self.assertEqual(page.pages, 3)

    def test_orders_page_defaults(self):
        page = parse_orders_page({"data": []}, 4)
        self.assertEqual(page.total, 0)
        self.assertEqual(page.pages, 1)
        self.assertEqual(page.currentPage, 4)

    def test_users_page_shapes(self):
        bare = parse_users_page([{"_id": "u1"}])
        self.assertEqual(bare.pagination.total, 1)
        users = parse_users_page({"users": [{"_id": "u1"}, {"_id": "u2"}], "pagination": {"total": 40, "totalPages": 2}})
        self.assertEqual(len(users.users), 2)
        self.assertEqual(users.pagination.totalPages, 2)
        data = parse_users_page({"data": [{"_id": "u3", "wallet": {"balance": 5}}]})
        self.assertEqual(data.users[0].wallet.balance, 5)
        self.assertEqual(parse_users_page({"weird": 1}).users, [])

    def test_odd_order_rows_are_coerced_or_skipped(self):
        page = parse_orders_page({"data": ODD_ORDERS, "total": 3}, 1)
        self.assertEqual([o.id for o in page.orders], ["a1", "a2"])
        first, second = page.orders
        self.assertIsNone(first.user)
        self.assertEqual(first.recipientNumber, "233541234567")
        self.assertEqual(first.orderReference, "99001")
        self.assertIsNone(second.capacity)
        self.assertIsNone(second.createdAt)
        self.assertEqual(second.status, "pending")
        self.assertEqual(page.total, 3)

    def test_odd_user_rows_are_coerced_or_skipped(self):
        users = parse_users_page({
            "users": [{"_id": "u1", "wallet": "64f0c0ffee", "phone": 241234567}, {"_id": ["u2"]}],
            "pagination": {"total": "many"},
        })
        self.assertEqual([u.id for u in users.users], ["u1"])
        self.assertIsNone(users.users[0].wallet)
        self.assertEqual(users.users[0].phone, "241234567")
        self.assertEqual(users.pagination.total, 2)


class TestIGetClient(unittest.IsolatedAsyncioTestCase):
    async def test_list_orders_sends_filters_and_exclusions(self):
        client, stub = _client({("GET", "/api/orders/all"): (200, {"data": [], "total": 0, "pages": 1})})
        await client.list_orders(
            page=2,
            limit=100,
            filters=OrderFilter(status="pending", startDate="2024-01-01"),
            search=" 0551 ",
            exclusions=Exclusions(networks=["AT"], networkCapacities=["MTN:1000", "AT:500"]),
        )
        params = stub.calls[0]["params"]
        self.assertEqual(params["page"], 2)
        self.assertEqual(params["limit"], 100)
        self.assertEqual(params["status"], "pending")
        self.assertEqual(params["search"], "0551")
        self.assertEqual(params["excludedNetworks"], "AT")
        self.assertEqual(params["excludedNetworkCapacities"], "MTN:1000,AT:500")
        self.assertNotIn("bundleType", params)
        self.assertNotIn("excludedCapacities", params)

    async def test_bulk_update_returns_modified(self):
        client, stub = _client({("PUT", "/api/orders/bulk-status"): (200, {"success": True, "data": {"modified": 2}})})
        modified = await client.bulk_update_order_status(["a", "b", "c"], "completed", sender_id="iGet")
        self.assertEqual(modified, 2)
        payload = stub.calls[0]["json"]
        self.assertEqual(payload["orderIds"], ["a", "b", "c"])
        self.assertEqual(payload["senderID"], "iGet")
        self.assertTrue(payload["sendSMSNotification"])

    async def test_local_service_base_url(self):
        client, stub = _client({("GET", "/api/iget/balance"): (200, {"data": {"balance": "12.5"}})})
        self.assertEqual(await client.wallet_balance(), 12.5)

    async def test_verify_session_clears_rejected_token(self):
        client, _ = _client({("GET", "/api/dashboard/verify-token"): (401, {"message": "jwt expired"})})
        self.assertFalse(await client.verify_session())
        self.assertFalse(client.session.authenticated)

    async def test_verify_session_keeps_token_on_outage(self):
        client, _ = _client({("GET", "/api/dashboard/verify-token"): (503, {})})
        with self.assertRaises(ApiError):
            await client.verify_session()
        self.assertTrue(client.session.authenticated)

    async def test_my_permissions_updates_session_role(self):
        client, _ = _client({
            ("GET", "/api/admin/my-permissions"): (200, {"admin": {"role": "credit_admin"}, "permissions": {"canCredit": True}})
        })
        data = await client.my_permissions()
        self.assertTrue(data["permissions"]["canCredit"])
        self.assertTrue(client.session.is_admin)


class TestTransactionChecker(unittest.IsolatedAsyncioTestCase):
    async def test_parses_record_with_static_token(self):
        client, stub = _client({
            ("GET", "/tx"): (200, {
                "status": "success",
                "data": {"status": "Delivered", "processed_date": "2024-05-01", "volume": "1GB", "response_code": 200},
            })
        })
        record = await TransactionChecker(client.http).check("REF1")
        self.assertEqual(record.status, "Delivered")
        self.assertEqual(record.processedDate, "2024-05-01")
        self.assertEqual(record.responseCode, "200")
        call = stub.calls[0]
        self.assertEqual(call["params"], {"reference": "REF1"})
        self.assertEqual(call["headers"]["token"], "Bearer hub")
        self.assertNotIn("Authorization", call["headers"])

    async def test_no_data_is_an_error(self):
        client, _ = _client({("GET", "/tx"): (200, {"status": "failed"})})
        with self.assertRaises(ApiError) as ctx:
            await TransactionChecker(client.http).check("REF1")
        self.assertEqual(ctx.exception.http_status, 404)

    async def test_numeric_fields_are_read_as_text(self):
        client, _ = _client({
            ("GET", "/tx"): (200, {"status": "success", "data": {"status": "Delivered", "number": 233541234567}})
        })
        record = await TransactionChecker(client.http).check("REF1")
        self.assertEqual(record.number, "233541234567")

    async def test_unreadable_payload_is_an_api_error(self):
        client, _ = _client({
            ("GET", "/tx"): (200, {"status": "success", "data": {"status": "Delivered", "processed_date": {"at": 1}}})
        })
        with self.assertRaises(ApiError) as ctx:
            await TransactionChecker(client.http).check("REF1")
        self.assertEqual(ctx.exception.http_status, 502)


class TestOrderViewOverHttp(unittest.IsolatedAsyncioTestCase):
    async def test_odd_rows_do_not_break_page_load(self):
        client, _ = _client({
            ("GET", "/api/orders/all"): (200, {"success": True, "data": ODD_ORDERS, "total": 3, "currentPage": 1, "pages": 1}),
        })
        view = OrderReconciliationView(client, auto_check_external=False)
        try:
            self.assertTrue(await view.load_page(1))
            self.assertEqual(view.store.ids(), ["a1", "a2"])
            self.assertIsNone(view.error)
            self.assertEqual(view.row(view.store.get("a1"))["recipientNumber"], "233541234567")
        finally:
            await view.close()
