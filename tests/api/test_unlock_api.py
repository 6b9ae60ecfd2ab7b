from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from door_relay.config import Settings  # noqa: E402
from door_relay.core.models import ActionResult  # noqa: E402
from door_relay.core.timers import MemoryTimerStore  # noqa: E402
from door_relay.main import create_app  # noqa: E402


SECRET = "s3cret-token"


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeInvoker:
    def __init__(self, fail: tuple[str, ...] = ()) -> None:
        self.calls: list[str] = []
        self._fail = fail

    def has_target(self, target: str) -> bool:
        return target in ("street", "floor")

    async def invoke(self, target: str) -> ActionResult:
        self.calls.append(target)
        if target in self._fail:
            return ActionResult(target=target, success=False, message="502 Bad Gateway", status_code=502)
        return ActionResult(target=target, success=True, message=f"Opening {target}", status_code=204)


class _ManualBackend:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple[int, Any]] = {}

    def schedule(self, key: str, fire_at_ms: int, on_fire: Any) -> None:
        self.jobs[key] = (fire_at_ms, on_fire)

    def cancel(self, key: str) -> bool:
        return self.jobs.pop(key, None) is not None

    def has_pending(self, key: str) -> bool:
        return key in self.jobs

    def start(self) -> None:
        return None

    def shutdown(self) -> None:
        return None

    async def fire(self, key: str) -> None:
        _, on_fire = self.jobs.pop(key)
        await on_fire(key)


class _Harness:
    def __init__(self, fail: tuple[str, ...] = ()) -> None:
        self.settings = Settings.model_validate(
            {
                "auth": {"secret": SECRET},
                "lock": {"api_key": "lock-key", "targets": {"street": "111", "floor": "222"}},
                "logging": {"format": "text"},
            }
        )
        self.invoker = _FakeInvoker(fail=fail)
        self.store = MemoryTimerStore()
        self.backend = _ManualBackend()
        self.clock = _Clock()
        self.app = create_app(
            self.settings,
            invoker=self.invoker,
            store=self.store,
            backend=self.backend,
            clock=self.clock,
        )

    def client(self) -> httpx.AsyncClient:
        transport = httpx.ASGITransport(app=self.app)
        return httpx.AsyncClient(transport=transport, base_url="http://testserver")


def _auth(value: str = SECRET) -> dict[str, str]:
    return {"Authorization": value}


def test_health_and_metrics_endpoints() -> None:
    harness = _Harness()

    async def call() -> tuple[httpx.Response, httpx.Response]:
        async with harness.client() as client:
            return await client.get("/health"), await client.get("/metrics")

    health, metrics = asyncio.run(call())

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert metrics.status_code == 200
    assert "door_relay_requests_total" in metrics.text
    assert harness.invoker.calls == []


def test_single_door_request_opens_street() -> None:
    harness = _Harness()

    async def call() -> httpx.Response:
        async with harness.client() as client:
            return await client.get("/", params={"door": "street"}, headers=_auth())

    response = asyncio.run(call())

    assert response.status_code == 200
    assert response.json()["results"][0]["message"] == "Opening street"
    assert response.headers["x-request-id"]
    assert harness.invoker.calls == ["street"]


def test_dual_request_returns_before_delayed_door_opens() -> None:
    harness = _Harness()

    async def scenario() -> httpx.Response:
        async with harness.client() as client:
            response = await client.get("/", headers=_auth())
        assert harness.invoker.calls == ["street"]
        harness.clock.now += 50
        await harness.backend.fire("/")
        return response

    response = asyncio.run(scenario())
    body = response.json()

    assert response.status_code == 200
    assert body["results"][0]["target"] == "street"
    assert body["timer"]["delay_seconds"] == 50
    assert body["timer"]["target"] == "floor"
    assert harness.invoker.calls == ["street", "floor"]
    assert harness.store.active_count() == 0


def test_dual_request_with_failed_first_door_does_not_arm() -> None:
    harness = _Harness(fail=("street",))

    async def call() -> httpx.Response:
        async with harness.client() as client:
            return await client.get("/", headers=_auth())

    response = asyncio.run(call())

    assert response.status_code == 500
    assert response.json()["error"] == "remote_action_failed"
    assert harness.store.active_count() == 0
    assert harness.backend.jobs == {}


def test_second_dual_request_while_pending_is_rejected() -> None:
    harness = _Harness()

    async def call() -> tuple[httpx.Response, httpx.Response]:
        async with harness.client() as client:
            first = await client.get("/", headers=_auth())
            second = await client.get("/", headers=_auth())
            return first, second

    first, second = asyncio.run(call())

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["message"] == "Timer already set"
    assert harness.store.active_count() == 1


def test_paths_have_independent_timers() -> None:
    harness = _Harness()

    async def call() -> tuple[httpx.Response, httpx.Response]:
        async with harness.client() as client:
            first = await client.get("/", headers=_auth())
            second = await client.get("/back", headers=_auth())
            return first, second

    first, second = asyncio.run(call())

    assert first.status_code == 200
    assert second.status_code == 200
    assert sorted(harness.backend.jobs) == ["/", "/back"]


def test_wrong_credential_is_unauthorized() -> None:
    harness = _Harness()

    async def call() -> list[httpx.Response]:
        async with harness.client() as client:
            return [
                await client.get("/", headers=_auth("nope")),
                await client.get("/", params={"door": "street"}),
                await client.get("/_timers/lobby", headers=_auth(f"Bearer {SECRET}")),
            ]

    responses = asyncio.run(call())

    assert [item.status_code for item in responses] == [401, 401, 401]
    assert harness.invoker.calls == []
    assert harness.store.active_count() == 0


@pytest.mark.parametrize("method", ["HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"])
def test_non_get_request_is_bad_request(method: str) -> None:
    harness = _Harness()

    async def call() -> httpx.Response:
        async with harness.client() as client:
            return await client.request(method, "/", headers=_auth())

    response = asyncio.run(call())

    assert response.status_code == 400
    if method != "HEAD":
        assert response.json()["message"] == "Bad request"
    assert harness.invoker.calls == []
    assert harness.store.active_count() == 0


def test_malformed_timeout_is_bad_request() -> None:
    harness = _Harness()

    async def call() -> httpx.Response:
        async with harness.client() as client:
            return await client.get("/", params={"timeout": "soon"}, headers=_auth())

    response = asyncio.run(call())

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_delay"
    assert harness.invoker.calls == []


def test_timer_endpoints_arm_conflict_and_cancel() -> None:
    harness = _Harness()

    async def call() -> list[httpx.Response]:
        async with harness.client() as client:
            return [
                await client.get("/_timers/lobby", params={"timeout": "12"}, headers=_auth()),
                await client.get("/_timers/lobby", headers=_auth()),
                await client.delete("/_timers/lobby", headers=_auth()),
                await client.delete("/_timers/lobby", headers=_auth()),
            ]

    armed, conflict, cancelled, missing = asyncio.run(call())

    assert armed.status_code == 200
    assert armed.json()["timer"]["delay_seconds"] == 12
    assert conflict.status_code == 400
    assert conflict.json()["error"] == "timer_already_set"
    assert cancelled.json()["cancelled"] is True
    assert missing.json()["cancelled"] is False
    assert harness.invoker.calls == []
