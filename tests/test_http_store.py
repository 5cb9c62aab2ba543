import asyncio
import json
import unittest

import httpx

from teamslots.config import SyncConfig
from teamslots.errors import ConflictError, NetworkError, ValidationError
from teamslots.stores.http import HttpRemoteStore
from teamslots.stores.remote import WhereClause


class FakeDocumentApi:
    """Minimal in-process document API behind an httpx.MockTransport."""

    def __init__(self):
        self.docs: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.status_override: int | None = None
        self.update_time: object = "2024-01-01T00:00:05Z"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"error": "forced"})

        path = request.url.path.removeprefix("/v1/")
        if request.method == "POST" and path.endswith(":query"):
            collection = path.removesuffix(":query")
            where = json.loads(request.content)["where"]
            found = [
                doc
                for key, doc in sorted(self.docs.items())
                if key.startswith(collection + "/")
                and all(doc.get(w["field"]) == w["value"] for w in where)
            ]
            return httpx.Response(200, json={"documents": found})
        if request.method == "GET":
            if path not in self.docs:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=self.docs[path])
        if request.method == "PUT":
            self.docs[path] = json.loads(request.content)
            return httpx.Response(200, json={"updateTime": self.update_time})
        if request.method == "PATCH":
            if path not in self.docs:
                return httpx.Response(404, json={"error": "not found"})
            self.docs[path].update(json.loads(request.content))
            return httpx.Response(200, json={"updateTime": "2024-01-01T00:00:06Z"})
        return httpx.Response(405)


class TestHttpRemoteStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.api = FakeDocumentApi()
        self.store = HttpRemoteStore(
            "http://docs.test/v1", poll_interval=0.01, transport=httpx.MockTransport(self.api)
        )
        await self.store.connect()

    async def asyncTearDown(self):
        await self.store.disconnect()

    async def test_set_then_get(self):
        stamp = await self.store.set_doc("teams/t1", {"name": "Core"})
        self.assertEqual(stamp.isoformat(), "2024-01-01T00:00:05+00:00")
        self.assertEqual(await self.store.get_doc("teams/t1"), {"name": "Core"})

    async def test_missing_doc_is_none(self):
        self.assertIsNone(await self.store.get_doc("teams/nope"))

    async def test_update_doc(self):
        await self.store.set_doc("teams/t1", {"name": "Core", "code": "X"})
        await self.store.update_doc("teams/t1", {"name": "New"})
        self.assertEqual(self.api.docs["teams/t1"], {"name": "New", "code": "X"})

    async def test_query_sends_where(self):
        await self.store.set_doc("teams/t1", {"code": "A"})
        await self.store.set_doc("teams/t2", {"code": "B"})
        docs = await self.store.query("teams", [WhereClause(field="code", value="B")])
        self.assertEqual(docs, [{"code": "B"}])
        body = json.loads(self.api.requests[-1].content)
        self.assertEqual(body["where"][0]["op"], "==")

    async def test_server_errors_are_network_errors(self):
        for status in (500, 503, 429):
            self.api.status_override = status
            with self.subTest(status=status):
                with self.assertRaises(NetworkError):
                    await self.store.set_doc("teams/t1", {})

    async def test_client_errors_are_permanent(self):
        self.api.status_override = 409
        with self.assertRaises(ConflictError):
            await self.store.set_doc("teams/t1", {})
        self.api.status_override = 422
        with self.assertRaises(ValidationError) as ctx:
            await self.store.set_doc("teams/t1", {})
        self.assertEqual(str(ctx.exception), "forced")

    async def test_transport_failure_is_network_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with HttpRemoteStore("http://docs.test/v1", transport=httpx.MockTransport(refuse)) as store:
            with self.assertRaises(NetworkError):
                await store.get_doc("teams/t1")

    async def test_not_connected(self):
        store = HttpRemoteStore("http://docs.test/v1")
        with self.assertRaises(NetworkError):
            await store.get_doc("teams/t1")

    async def test_subscribe_polls_for_changes(self):
        seen: list[int] = []
        unsubscribe = await self.store.subscribe("teams", lambda docs: seen.append(len(docs)))
        await asyncio.sleep(0.03)
        await self.store.set_doc("teams/t1", {"name": "Core"})
        for _ in range(50):
            if seen[-1:] == [1]:
                break
            await asyncio.sleep(0.01)
        unsubscribe()
        self.assertEqual(seen, [0, 1])

    def test_from_config(self):
        config = SyncConfig(remote_base_url="http://x.test/api/", remote_timeout_seconds=2.5)
        store = HttpRemoteStore.from_config(config)
        self.assertEqual(store.base_url, "http://x.test/api")
        self.assertEqual(store.timeout, 2.5)


class TestHttpRemoteStoreResilience(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.api = FakeDocumentApi()
        self.store = HttpRemoteStore(
            "http://docs.test/v1", poll_interval=0.01, transport=httpx.MockTransport(self.api)
        )
        await self.store.connect()

    async def asyncTearDown(self):
        await self.store.disconnect()

    async def _wait_for(self, condition) -> None:
        for _ in range(100):
            if condition():
                return
            await asyncio.sleep(0.01)

    async def test_malformed_update_time(self):
        for bad in ("yesterday", 12345):
            self.api.update_time = bad
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError) as ctx:
                    await self.store.set_doc("teams/t1", {})
                self.assertEqual(ctx.exception.field, "updateTime")

    async def test_missing_update_time_uses_now(self):
        self.api.update_time = None
        stamp = await self.store.set_doc("teams/t1", {})
        self.assertIsNotNone(stamp.tzinfo)

    async def test_failing_listener_keeps_polling(self):
        seen: list[int] = []

        def on_change(docs):
            seen.append(len(docs))
            if len(seen) == 2:
                raise RuntimeError("listener failed")

        await self.store.subscribe("teams", on_change)
        await self._wait_for(lambda: len(seen) == 1)
        await self.store.set_doc("teams/t1", {"name": "Core"})
        await self._wait_for(lambda: len(seen) == 2)
        await self.store.set_doc("teams/t2", {"name": "Infra"})
        await self._wait_for(lambda: len(seen) == 3)

        self.assertEqual(seen, [0, 1, 2])
        self.assertEqual(len(self.store._pollers), 1)

    async def test_permanent_poll_error_keeps_polling(self):
        seen: list[int] = []
        await self.store.subscribe("teams", lambda docs: seen.append(len(docs)))
        await self._wait_for(lambda: len(seen) == 1)

        self.api.status_override = 409
        await asyncio.sleep(0.05)
        self.api.status_override = None
        await self.store.set_doc("teams/t1", {"name": "Core"})
        await self._wait_for(lambda: len(seen) == 2)

        self.assertEqual(seen, [0, 1])
        self.assertEqual(len(self.store._pollers), 1)
