import unittest
from unittest.mock import patch

import httpx

from kimi_bridge import upstream
from kimi_bridge.errors import UnsupportedModelError, UpstreamError
from tests._bridge_test_utils import UPSTREAM_URL, FakeKimiUpstream, success_reply


class TestModelTranslation(unittest.TestCase):
    def test_known_models_map_deterministically(self):
        self.assertEqual(
            upstream.resolve_upstream_model("kimi-k2-instruct-0905"),
            "moonshotai/Kimi-K2-Instruct-0905",
        )
        self.assertEqual(upstream.resolve_upstream_model("kimi-k2-instruct"), "moonshotai/Kimi-K2-Instruct")
        self.assertEqual(
            upstream.resolve_upstream_model("kimi-k2-instruct"),
            upstream.resolve_upstream_model("kimi-k2-instruct"),
        )

    def test_unknown_model_raises(self):
        with self.assertRaises(UnsupportedModelError) as ctx:
            upstream.resolve_upstream_model("gpt-4")
        self.assertEqual(ctx.exception.model, "gpt-4")

    def test_non_string_model_raises(self):
        with self.assertRaises(UnsupportedModelError):
            upstream.resolve_upstream_model(["kimi-k2-instruct"])

    def test_custom_model_map(self):
        model_map = {"kimi-next": "moonshotai/Kimi-Next"}

        self.assertEqual(upstream.resolve_upstream_model("kimi-next", model_map), "moonshotai/Kimi-Next")
        with self.assertRaises(UnsupportedModelError):
            upstream.resolve_upstream_model("kimi-k2-instruct", model_map)

    def test_prepare_payload(self):
        payload = upstream.prepare_payload("User: hi", "kimi-k2-instruct", "session_1_abc", "n0nce")

        self.assertEqual(
            payload,
            {
                "action": "kimi_send_message",
                "nonce": "n0nce",
                "message": "User: hi",
                "model": "moonshotai/Kimi-K2-Instruct",
                "session_id": "session_1_abc",
            },
        )


class TestParseUpstreamResponse(unittest.TestCase):
    def test_message_from_data_object(self):
        self.assertEqual(upstream.parse_upstream_response(success_reply("hello")), "hello")

    def test_missing_message_is_empty(self):
        self.assertEqual(upstream.parse_upstream_response({"success": True, "data": {}}), "")

    def test_string_data_is_the_message(self):
        self.assertEqual(upstream.parse_upstream_response({"success": True, "data": "plain"}), "plain")

    def test_failure_flag_raises_with_detail(self):
        with self.assertRaises(UpstreamError) as ctx:
            upstream.parse_upstream_response({"success": False, "data": "Nonce verification failed"})
        self.assertIn("Nonce verification failed", ctx.exception.message)

    def test_failure_without_detail(self):
        with self.assertRaises(UpstreamError) as ctx:
            upstream.parse_upstream_response({"success": False})
        self.assertIn("Unknown error", ctx.exception.message)

    def test_non_object_body_raises(self):
        with self.assertRaises(UpstreamError):
            upstream.parse_upstream_response(["not", "an", "object"])


class TestKimiUpstreamClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.fake = FakeKimiUpstream()
        self.client = upstream.KimiUpstreamClient(UPSTREAM_URL, transport=self.fake.transport)
        self._debug_patcher = patch("kimi_bridge.debug.DEBUG", False)
        self._debug_patcher.start()

    def tearDown(self) -> None:
        self._debug_patcher.stop()

    async def test_posts_form_encoded_payload(self):
        self.fake.replies = [success_reply("Hi there")]
        payload = upstream.prepare_payload("User: hi", "kimi-k2-instruct-0905", "session_1_abc", "n0nce")

        reply = await self.client.send_message(payload)

        self.assertEqual(reply, "Hi there")
        self.assertEqual(self.fake.chat_requests, [payload])

    async def test_error_status_raises(self):
        self.fake.replies = [500]

        with self.assertRaises(UpstreamError) as ctx:
            await self.client.send_message({"action": "kimi_send_message"})
        self.assertEqual(ctx.exception.upstream_status, 500)

    async def test_non_json_body_raises(self):
        self.fake.replies = [httpx.Response(200, text="<html>Cloudflare</html>")]

        with self.assertRaises(UpstreamError):
            await self.client.send_message({"action": "kimi_send_message"})

    async def test_logical_failure_raises(self):
        self.fake.replies = [{"success": False, "data": "Invalid nonce"}]

        with self.assertRaises(UpstreamError) as ctx:
            await self.client.send_message({"action": "kimi_send_message"})
        self.assertIn("Invalid nonce", ctx.exception.message)

    async def test_transport_error_raises_upstream_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = upstream.KimiUpstreamClient(UPSTREAM_URL, transport=httpx.MockTransport(refuse))

        with self.assertRaises(UpstreamError):
            await client.send_message({"action": "kimi_send_message"})


if __name__ == "__main__":
    unittest.main()
