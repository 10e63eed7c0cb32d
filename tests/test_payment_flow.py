import json
import os
import shutil
import tempfile
import threading
import unittest
from unittest.mock import patch

import requests

from core.app_settings import Catalog, PaymentSettings
from core.db import DB
from core.ledger_service import credit_paid_balance, get_or_create_account
from core.models.account import Account
from core.models.transaction import Transaction
from core.payment_gateway import GatewayError, LavaTopGateway, MockGateway, build_gateway
from core.payment_service import (
    SETTLE_DUPLICATE,
    SETTLE_NOT_FOUND,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    PackageNotFound,
    apply_settlement,
    create_intent,
    list_transactions,
)


class _MockResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


class _FailingGateway(MockGateway):
    def create_invoice(self, intent_id, amount, currency, package):
        raise GatewayError("lava top API error: boom (status: 500)")


class PaymentFlowTestCase(unittest.TestCase):
    def setUp(self):
        DB.configure("sqlite://")
        DB.create_tables()
        self.session = DB.get_session()
        self.account_id = "acc_pay"
        self.catalog = Catalog()
        get_or_create_account(self.session, self.account_id)

    def tearDown(self):
        self.session.close()
        DB.drop_tables()

    def _paid(self):
        account = self.session.query(Account).filter(Account.id == self.account_id).populate_existing().first()
        return account.paid_generations

    def test_duplicate_completion_credits_once(self):
        txn, payment_url = create_intent(self.session, self.account_id, "pack2", "RUB", self.catalog, MockGateway())
        self.assertEqual(txn.status, STATUS_PENDING)
        self.assertEqual(txn.amount, 599)
        self.assertEqual(txn.currency, "RUB")
        self.assertEqual(txn.external_order_id, f"mock-{txn.id}")
        self.assertEqual(payment_url, f"mockpay://{txn.id}")

        first = apply_settlement(self.session, txn.external_order_id, "completed", self.catalog)
        second = apply_settlement(self.session, txn.external_order_id, "completed", self.catalog)

        self.assertEqual(first, STATUS_COMPLETED)
        self.assertEqual(second, SETTLE_DUPLICATE)
        self.assertEqual(self._paid(), 30)

    def test_success_status_alias(self):
        txn, _ = create_intent(self.session, self.account_id, "pack1", "USD", self.catalog, MockGateway())
        self.assertEqual(txn.amount, 2.99)
        self.assertEqual(apply_settlement(self.session, txn.external_order_id, "success", self.catalog), STATUS_COMPLETED)
        self.assertEqual(self._paid(), 10)

    def test_failed_status_then_late_success_is_ignored(self):
        txn, _ = create_intent(self.session, self.account_id, "pack3", "EUR", self.catalog, MockGateway())
        self.assertEqual(txn.currency, "USD")
        self.assertEqual(txn.amount, 19.99)
        self.assertEqual(apply_settlement(self.session, txn.external_order_id, "cancelled", self.catalog), STATUS_FAILED)
        self.assertEqual(apply_settlement(self.session, txn.external_order_id, "success", self.catalog), SETTLE_DUPLICATE)
        self.assertEqual(self._paid(), 0)

    def test_unknown_order(self):
        self.assertEqual(apply_settlement(self.session, "missing", "success", self.catalog), SETTLE_NOT_FOUND)
        self.assertEqual(apply_settlement(self.session, "", "success", self.catalog), SETTLE_NOT_FOUND)
        self.assertEqual(self._paid(), 0)

    def test_unknown_package(self):
        with self.assertRaises(PackageNotFound):
            create_intent(self.session, self.account_id, "pack9", "USD", self.catalog, MockGateway())
        self.assertEqual(self.session.query(Transaction).count(), 0)

    def test_gateway_failure_marks_intent_failed(self):
        with self.assertRaises(GatewayError):
            create_intent(self.session, self.account_id, "pack1", "USD", self.catalog, _FailingGateway())
        txn = self.session.query(Transaction).first()
        self.assertEqual(txn.status, STATUS_FAILED)
        self.assertIsNone(txn.external_order_id)

    def test_list_transactions(self):
        create_intent(self.session, self.account_id, "pack1", "USD", self.catalog, MockGateway())
        create_intent(self.session, self.account_id, "pack2", "RUB", self.catalog, MockGateway())
        items = list_transactions(self.session, self.account_id)
        self.assertEqual(len(items), 2)
        self.assertEqual({i["package_type"] for i in items}, {"pack1", "pack2"})
        self.assertEqual(list_transactions(self.session, "someone-else"), [])


class PaymentSettlementConcurrencyTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        DB.configure(f"sqlite:///{os.path.join(self.tmp_dir, 'payment.db')}")
        DB.create_tables()
        self.account_id = "acc_pay_concurrent"
        self.catalog = Catalog()
        session = DB.get_session()
        get_or_create_account(session, self.account_id)
        txn, _ = create_intent(session, self.account_id, "pack2", "USD", self.catalog, MockGateway())
        self.order_id = txn.external_order_id
        self.transaction_id = txn.id
        session.close()

    def tearDown(self):
        DB.configure("sqlite://")
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _paid(self):
        session = DB.get_session()
        try:
            return session.query(Account).filter(Account.id == self.account_id).first().paid_generations
        finally:
            session.close()

    def test_concurrent_completion_credits_once(self):
        results = []
        lock = threading.Lock()

        def _worker():
            session = DB.get_session()
            try:
                outcome = apply_settlement(session, self.order_id, "completed", self.catalog)
            finally:
                session.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(STATUS_COMPLETED), 1)
        self.assertEqual(results.count(SETTLE_DUPLICATE), 7)
        self.assertEqual(self._paid(), self.catalog.find("pack2").count)

    def test_order_settled_elsewhere_after_read_is_not_credited_again(self):
        catalog = self.catalog
        transaction_id = self.transaction_id
        account_id = self.account_id

        class _RacingCatalog:
            # 另一个进程在本进程读到 pending 之后抢先完成了同一订单
            def find(self, package_type):
                package = catalog.find(package_type)
                other = DB.get_session()
                try:
                    other.query(Transaction).filter(Transaction.id == transaction_id).update({"status": STATUS_COMPLETED})
                    credit_paid_balance(other, account_id, package.count)
                finally:
                    other.close()
                return package

        session = DB.get_session()
        try:
            result = apply_settlement(session, self.order_id, "completed", _RacingCatalog())
        finally:
            session.close()

        self.assertEqual(result, SETTLE_DUPLICATE)
        self.assertEqual(self._paid(), catalog.find("pack2").count)


class LavaTopGatewayTestCase(unittest.TestCase):
    def setUp(self):
        self.settings = PaymentSettings(channel="lava", shop_id="shop-1", secret_key="sec", api_url="https://api.lava.top")
        self.gateway = LavaTopGateway(self.settings)
        self.package = Catalog().find("pack2")

    def test_create_invoice(self):
        resp = _MockResponse(payload={"status": "success", "data": {"invoiceId": "inv-1", "url": "https://pay.lava.top/inv-1"}})
        with patch("core.payment_gateway.requests.post", return_value=resp) as post_mock:
            order_id, url = self.gateway.create_invoice("txn-1", 599, "RUB", self.package)

        self.assertEqual((order_id, url), ("inv-1", "https://pay.lava.top/inv-1"))
        self.assertEqual(post_mock.call_args[0][0], "https://api.lava.top/v1/invoice/create")
        body = json.loads(post_mock.call_args[1]["data"])
        self.assertEqual(body, {"sum": 599, "orderId": "txn-1", "shopId": "shop-1", "currency": "RUB"})
        self.assertEqual(post_mock.call_args[1]["headers"]["Authorization"], "sec")

    def test_error_status(self):
        resp = _MockResponse(payload={"status": "error", "message": "bad shop"})
        with patch("core.payment_gateway.requests.post", return_value=resp):
            with self.assertRaises(GatewayError) as ctx:
                self.gateway.create_invoice("txn-1", 599, "RUB", self.package)
        self.assertIn("bad shop", str(ctx.exception))

    def test_http_error_and_transport_error(self):
        with patch("core.payment_gateway.requests.post", return_value=_MockResponse(500, text="oops")):
            with self.assertRaises(GatewayError):
                self.gateway.create_invoice("txn-1", 1, "USD", self.package)
        with patch("core.payment_gateway.requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            with self.assertRaises(GatewayError):
                self.gateway.create_invoice("txn-1", 1, "USD", self.package)

    def test_missing_credentials(self):
        gateway = LavaTopGateway(PaymentSettings(channel="lava"))
        with patch("core.payment_gateway.requests.post") as post_mock:
            with self.assertRaises(GatewayError):
                gateway.create_invoice("txn-1", 1, "USD", self.package)
        post_mock.assert_not_called()

    def test_build_gateway(self):
        self.assertIsInstance(build_gateway(PaymentSettings(channel="mock")), MockGateway)
        self.assertIsInstance(build_gateway(self.settings), LavaTopGateway)
        with self.assertRaises(GatewayError):
            build_gateway(PaymentSettings(channel="paypal"))


if __name__ == "__main__":
    unittest.main()
