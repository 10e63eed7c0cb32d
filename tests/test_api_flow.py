import base64
import json
import unittest
from datetime import datetime
from io import BytesIO
from unittest.mock import patch

from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient
from PIL import Image

from core.app_settings import AppSettings, GenerationSettings, PaymentSettings, ProviderSettings, StorageSettings, get_app_settings
from core.auth import create_access_token, get_current_user
from core.db import DB
from core.image_service import ImageService
from core.models.account import Account
from core.staging_service import MemoryStagingCache, get_staging_cache
from apis.payment import get_packages
from web import app


class _MockResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


def _data_uri():
    buf = BytesIO()
    Image.new("RGB", (16, 9)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


class ApiFlowTestCase(unittest.TestCase):
    def setUp(self):
        DB.configure("sqlite://")
        DB.create_tables()
        self.settings = AppSettings(
            generation=GenerationSettings(poll_interval_seconds=0, max_poll_attempts=3),
            providers={"nanobanana": ProviderSettings(name="nanobanana", api_key="nb-key", base_url="https://api.kie.ai")},
            payment=PaymentSettings(channel="mock"),
            storage=StorageSettings(base_url="https://cover.example.com"),
        )
        self.staging = MemoryStagingCache("https://cover.example.com")
        app.dependency_overrides[get_app_settings] = lambda: self.settings
        app.dependency_overrides[get_staging_cache] = lambda: self.staging
        self.client = TestClient(app)
        self.account_id = "acc_api"
        self.headers = {"Authorization": f"Bearer {create_access_token({'sub': self.account_id, 'email': 'a@b.c'})}"}

    def tearDown(self):
        app.dependency_overrides.clear()
        DB.drop_tables()

    def _set_balance(self, free, paid):
        session = DB.get_session()
        account = session.query(Account).filter(Account.id == self.account_id).first()
        account.free_generations_left = free
        account.paid_generations = paid
        account.last_free_reset_day = datetime.now().date()
        session.commit()
        session.close()

    def test_health_and_trace_header(self):
        resp = self.client.get("/api/health", headers={"X-Trace-Id": "abc123"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})
        self.assertEqual(resp.headers["X-Trace-Id"], "abc123")

    def test_requires_token(self):
        self.assertEqual(self.client.get("/api/user/limits").status_code, 401)
        resp = self.client.get("/api/user/limits", headers={"Authorization": "Bearer broken"})
        self.assertEqual(resp.status_code, 401)

    def test_current_user_called_directly(self):
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=create_access_token({"sub": "acc_direct", "name": "Ann"}))
        user = get_current_user(creds)
        self.assertEqual(user, {"id": "acc_direct", "email": "", "name": "Ann", "picture": ""})

    def test_rejects_path_like_account_id(self):
        for sub in ("..", "../other", "a/b"):
            with self.subTest(sub=sub):
                token = create_access_token({"sub": sub})
                resp = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
                self.assertEqual(resp.status_code, 401)
        session = DB.get_session()
        self.assertEqual(session.query(Account).count(), 0)
        session.close()

    def test_me_creates_account_lazily(self):
        resp = self.client.get("/api/auth/me", headers=self.headers)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["id"], self.account_id)
        self.assertEqual(data["email"], "a@b.c")
        self.assertTrue(data["can_generate"])
        self.assertEqual(data["generations_remaining"], 1)
        self.assertEqual(data["free_generations_left"], 1)
        self.assertEqual(data["paid_generations"], 0)

    def test_packages(self):
        resp = self.client.get("/api/packages")
        packages = resp.json()["data"]
        self.assertEqual([p["type"] for p in packages], ["pack1", "pack2", "pack3"])
        self.assertTrue(packages[1]["popular"])

    def test_generate_cover_end_to_end(self):
        submit = _MockResponse(payload={"code": 200, "data": {"taskId": "task-9"}})
        poll = _MockResponse(payload={
            "code": 200,
            "data": {"state": "success", "resultJson": json.dumps({"resultUrls": ["https://cdn/out.png"]})},
        })
        with patch("core.providers.nano_banana.requests.post", return_value=submit) as post_mock, \
                patch("core.providers.nano_banana.requests.get", return_value=poll), \
                patch.object(ImageService, "persist_result", return_value="https://cover.example.com/storage/acc_api/x.png"):
            resp = self.client.post("/api/generate-cover", json={"image": _data_uri()}, headers=self.headers)

        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertEqual(data["image_url"], "https://cover.example.com/storage/acc_api/x.png")
        self.assertFalse(data["degraded"])
        staged_url = json.loads(post_mock.call_args[1]["data"])["input"]["image_urls"][0]
        self.assertTrue(staged_url.startswith("https://cover.example.com/api/image/"))
        self.assertEqual(len(self.staging), 0)

        limits = self.client.get("/api/user/limits", headers=self.headers).json()["data"]
        self.assertEqual(limits, {"can_generate": False, "remaining": 0})
        history = self.client.get("/api/user/generations", headers=self.headers).json()["data"]
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["provider"], "nanobanana")

    def test_generate_cover_without_credits(self):
        self.client.get("/api/auth/me", headers=self.headers)
        self._set_balance(free=0, paid=0)
        with patch("core.providers.nano_banana.requests.post") as post_mock:
            resp = self.client.post("/api/generate-cover", json={"image": _data_uri()}, headers=self.headers)
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.json()["detail"]["data"]["kind"], "NoCredits")
        post_mock.assert_not_called()

    def test_generate_cover_bad_input(self):
        resp = self.client.post("/api/generate-cover", json={"image": "data:image/png;base64,%%%"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["data"]["kind"], "InvalidImage")
        resp = self.client.post(
            "/api/generate-cover",
            json={"image": _data_uri(), "provider": "unknown"},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["data"]["kind"], "UnknownProvider")

    def test_staged_image_endpoint(self):
        artifact_id = self.staging.put(b"\x89PNG-bytes", content_kind="png")
        resp = self.client.get(f"/api/image/{artifact_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"\x89PNG-bytes")
        self.assertEqual(resp.headers["content-type"], "image/png")
        self.assertEqual(self.client.get("/api/image/missing.png").status_code, 404)

    def test_payment_create_and_duplicate_webhook(self):
        resp = self.client.post(
            "/api/payment/create",
            json={"package_type": "pack2", "currency": "RUB"},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertTrue(data["payment_url"].startswith("mockpay://"))

        for _ in range(2):
            hook = self.client.post("/api/payment/webhook", json={"order_id": data["order_id"], "status": "completed"})
            self.assertEqual(hook.json(), {"status": "ok"})

        me = self.client.get("/api/auth/me", headers=self.headers).json()["data"]
        self.assertEqual(me["paid_generations"], 30)
        txns = self.client.get("/api/payment/transactions", headers=self.headers).json()["data"]
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0]["status"], "completed")
        self.assertEqual(txns[0]["amount"], 599)

    def test_payment_errors(self):
        resp = self.client.post("/api/payment/create", json={"package_type": "pack9"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        hook = self.client.post("/api/payment/webhook", json={"order_id": "nope", "status": "success"})
        self.assertEqual(hook.status_code, 404)


class PackagesEndpointTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_get_packages_should_return_catalog(self):
        result = await get_packages(settings=AppSettings())
        self.assertEqual(result.get("code"), 0)
        self.assertEqual(len(result["data"]), 3)
        self.assertEqual(result["data"][2]["price_rub"], 1499)


if __name__ == "__main__":
    unittest.main()
