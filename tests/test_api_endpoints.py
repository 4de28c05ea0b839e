import unittest

from fastapi.testclient import TestClient

from kimi_bridge import main
from tests._bridge_test_utils import AUTH_HEADERS, BridgeConfigMixin, parse_sse, success_reply


class TestApiEndpoints(BridgeConfigMixin, unittest.TestCase):
    def setUp(self):
        self._start_bridge_patches(main)

    def tearDown(self):
        self._stop_bridge_patches()

    def test_root_welcome_message(self):
        with TestClient(main.app) as client:
            resp = client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Service is running normally", resp.json()["message"])

    def test_models_requires_bearer_token(self):
        with TestClient(main.app) as client:
            missing = client.get("/v1/models")
            no_prefix = client.get("/v1/models", headers={"Authorization": "test-key"})
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(no_prefix.status_code, 401)

    def test_models_rejects_wrong_key(self):
        with TestClient(main.app) as client:
            resp = client.get("/v1/models", headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 403)

    def test_models_list(self):
        with TestClient(main.app) as client:
            resp = client.get("/v1/models", headers=AUTH_HEADERS)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["object"], "list")
        self.assertEqual([m["id"] for m in body["data"]], ["kimi-k2-instruct-0905", "kimi-k2-instruct"])
        for model in body["data"]:
            self.assertEqual(model["object"], "model")
            self.assertEqual(model["owned_by"], "kimi-ai")
            self.assertIsInstance(model["created"], int)

    def test_models_list_follows_configured_model_map(self):
        self.config["model_map"] = {"kimi-next": "moonshotai/Kimi-Next"}
        self.write_config()

        with TestClient(main.app) as client:
            resp = client.get("/v1/models", headers=AUTH_HEADERS)
        self.assertEqual([m["id"] for m in resp.json()["data"]], ["kimi-next"])

    def test_auth_disabled_with_sentinel_key(self):
        self.config["api_master_key"] = "1"
        self.write_config()

        with TestClient(main.app) as client:
            resp = client.get("/v1/models")
        self.assertEqual(resp.status_code, 200)

    def test_chat_requires_auth(self):
        with TestClient(main.app) as client:
            resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.upstream.chat_requests, [])

    def test_chat_streams_through_test_client(self):
        self.upstream.replies = [success_reply("yo")]

        with TestClient(main.app) as client:
            with client.stream(
                "POST",
                "/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "hi"}]},
                headers=AUTH_HEADERS,
            ) as resp:
                body = "".join(resp.iter_text())

        self.assertEqual(resp.status_code, 200)
        records = parse_sse(body)
        self.assertEqual([r["choices"][0]["delta"]["content"] for r in records[:-1]], ["y", "o", ""])
        self.assertEqual(records[-1], "[DONE]")

    def test_health_reports_nonce_and_sessions(self):
        self.config["prefetch_nonce_on_startup"] = True
        self.write_config()

        with TestClient(main.app) as client:
            resp = client.get("/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "healthy")
        self.assertTrue(body["checks"]["nonce_cached"])
        self.assertEqual(body["checks"]["active_sessions"], 0)
        self.assertEqual(body["checks"]["known_models"], 2)

    def test_health_degraded_without_nonce(self):
        with TestClient(main.app) as client:
            resp = client.get("/health")
        self.assertEqual(resp.json()["status"], "degraded")


if __name__ == "__main__":
    unittest.main()
