"""Shared fixtures: a fake incident desk API served by aiohttp's TestServer."""

import asyncio
import itertools
from collections import Counter

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from api_client import ApiClient
from auth.token_store import TokenStore

PREFIX = "/api/v1"


def _unauthorized():
    return web.json_response({"success": False, "message": "Unauthorized"}, status=401)


class FakeApi:
    """Remote service double. Access tokens are valid until expire() is called."""

    def __init__(self):
        self.access_tokens = {"access-1"}
        self.refresh_tokens = {"refresh-1"}
        self.calls: Counter = Counter()
        self.auth_headers: list[tuple[str, str | None]] = []
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_status = 200
        self.rotate = True
        self.incident_status = 200
        self._ids = itertools.count(2)
        self.base_url = ""

        app = web.Application()
        app.router.add_post(f"{PREFIX}/auth/login", self.login)
        app.router.add_post(f"{PREFIX}/auth/logout", self.logout)
        app.router.add_post(f"{PREFIX}/auth/refresh", self.refresh)
        app.router.add_get(f"{PREFIX}/users/me", self.me)
        app.router.add_get(f"{PREFIX}/incidents", self.list_incidents)
        app.router.add_get(f"{PREFIX}/incidents/{{id}}", self.get_incident)
        app.router.add_get(f"{PREFIX}/incidents/{{id}}/available-transitions", self.transitions)
        app.router.add_post(f"{PREFIX}/incidents/{{id}}/transition", self.transition)
        app.router.add_get(f"{PREFIX}/admin/workflows", self.workflows)
        self.app = app

    def expire(self):
        self.access_tokens.clear()

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization")
        self.auth_headers.append((request.path, header))
        return header is not None and header.removeprefix("Bearer ") in self.access_tokens

    async def login(self, request):
        self.calls["login"] += 1
        body = await request.json()
        if body.get("password") != "secret":
            return web.json_response({"success": False, "message": "Invalid credentials"}, status=400)
        return web.json_response({"success": True, "data": {
            "token": "access-1",
            "refresh_token": "refresh-1",
            "user": {"id": "u1", "email": body["email"], "username": "alice"},
        }})

    async def logout(self, request):
        self.calls["logout"] += 1
        self.auth_headers.append((request.path, request.headers.get("Authorization")))
        return web.json_response({"success": True, "data": None})

    async def refresh(self, request):
        self.calls["refresh"] += 1
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_status != 200:
            return web.json_response({"success": False}, status=self.refresh_status)
        body = await request.json()
        if body.get("refresh_token") not in self.refresh_tokens:
            return _unauthorized()
        n = next(self._ids)
        access = f"access-{n}"
        self.access_tokens = {access}
        data = {"token": access}
        if self.rotate:
            self.refresh_tokens = {f"refresh-{n}"}
            data["refresh_token"] = f"refresh-{n}"
        return web.json_response({"success": True, "data": data})

    async def me(self, request):
        self.calls["me"] += 1
        if not self._authorized(request):
            return _unauthorized()
        return web.json_response({"success": True, "data": {
            "id": "u1", "email": "alice@example.com", "permissions": ["incidents:view"],
        }})

    async def list_incidents(self, request):
        self.calls["incidents"] += 1
        if not self._authorized(request):
            return _unauthorized()
        if self.incident_status != 200:
            return web.json_response({"success": False, "message": "boom"}, status=self.incident_status)
        page = int(request.query.get("page", "1"))
        return web.json_response({
            "success": True,
            "data": [{"id": "i1", "title": "Broken pump", "priority": 2}],
            "pagination": {"page": page, "total_pages": 3, "total": 41},
            "query": dict(request.query),
        })

    async def get_incident(self, request):
        self.calls["incident"] += 1
        if not self._authorized(request):
            return _unauthorized()
        return web.json_response({"success": True, "data": {"id": request.match_info["id"]}})

    async def transitions(self, request):
        if not self._authorized(request):
            return _unauthorized()
        return web.json_response({"success": True, "data": [
            {"transition": {"id": "t1", "name": "Resolve"}},
        ]})

    async def transition(self, request):
        self.calls["transition"] += 1
        if not self._authorized(request):
            return _unauthorized()
        body = await request.json()
        return web.json_response({"success": True, "data": {"id": request.match_info["id"], **body}})

    async def workflows(self, request):
        if not self._authorized(request):
            return _unauthorized()
        return web.json_response({"success": True, "data": [
            {"id": "w1", "states": [{"id": "s1", "name": "New"}, {"id": "s2", "name": "Closed"}]},
            {"id": "w2", "states": [{"id": "s3", "name": "New"}, {"id": "s4", "name": "Escalated"}]},
        ]})


@pytest_asyncio.fixture
async def fake_api():
    api = FakeApi()
    server = TestServer(api.app)
    await server.start_server()
    api.base_url = str(server.make_url(PREFIX))
    yield api
    await server.close()


@pytest.fixture
def store(tmp_path):
    return TokenStore(str(tmp_path / "config.json"))


@pytest_asyncio.fixture
async def client(fake_api, store):
    c = ApiClient(fake_api.base_url, store)
    yield c
    await c.close()
