from __future__ import annotations

import asyncio
import time
from pathlib import Path
import sys
from typing import Any

import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from door_relay.config import TimerSettings  # noqa: E402
from door_relay.core.errors import UnknownTargetError  # noqa: E402
from door_relay.core.models import ActionResult, PendingTimer  # noqa: E402
from door_relay.core.scheduler import DelayedActionScheduler  # noqa: E402
from door_relay.core.timers import MemoryTimerStore  # noqa: E402


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeInvoker:
    def __init__(self, fail: tuple[str, ...] = (), raise_on: tuple[str, ...] = ()) -> None:
        self.calls: list[str] = []
        self._fail = fail
        self._raise_on = raise_on

    def has_target(self, target: str) -> bool:
        return target in ("street", "floor")

    async def invoke(self, target: str) -> ActionResult:
        self.calls.append(target)
        if target in self._raise_on:
            raise RuntimeError("boom")
        if target in self._fail:
            return ActionResult(target=target, success=False, message="503 Service Unavailable", status_code=503)
        return ActionResult(target=target, success=True, message=f"Opening {target}", status_code=204)


class _ManualBackend:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple[int, Any]] = {}
        self.schedule_calls = 0
        self.started = False

    def schedule(self, key: str, fire_at_ms: int, on_fire: Any) -> None:
        self.schedule_calls += 1
        self.jobs[key] = (fire_at_ms, on_fire)

    def cancel(self, key: str) -> bool:
        return self.jobs.pop(key, None) is not None

    def has_pending(self, key: str) -> bool:
        return key in self.jobs

    def start(self) -> None:
        self.started = True

    def shutdown(self) -> None:
        self.started = False

    async def fire(self, key: str) -> None:
        _, on_fire = self.jobs.pop(key)
        await on_fire(key)


def _build(
    invoker: _FakeInvoker | None = None,
    store: MemoryTimerStore | None = None,
    backend: _ManualBackend | None = None,
    clock: _Clock | None = None,
) -> tuple[DelayedActionScheduler, _FakeInvoker, MemoryTimerStore, _ManualBackend, _Clock]:
    invoker = invoker or _FakeInvoker()
    store = store or MemoryTimerStore()
    backend = backend or _ManualBackend()
    clock = clock or _Clock()
    scheduler = DelayedActionScheduler(
        settings=TimerSettings(default_delay_seconds=50),
        invoker=invoker,
        store=store,
        backend=backend,
        default_target="floor",
        clock=clock,
    )
    return scheduler, invoker, store, backend, clock


@pytest.mark.asyncio
async def test_duplicate_arm_is_rejected_until_timer_fires() -> None:
    scheduler, invoker, store, backend, clock = _build()

    first = await scheduler.arm("/", 10)
    second = await scheduler.arm("/", 20)

    assert first.accepted is True
    assert first.delay_seconds == 10
    assert second.accepted is False
    assert second.reason == "timer already set"
    assert store.get("/").fire_at_ms == 1_010_000

    clock.now = 1_010.0
    await backend.fire("/")
    third = await scheduler.arm("/", 30)

    assert invoker.calls == ["floor"]
    assert third.accepted is True
    assert third.delay_seconds == 30


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [None, 0, -5, float("nan"), float("inf")])
async def test_arm_falls_back_to_default_delay(raw: float | None) -> None:
    scheduler, _, store, _, _ = _build()

    result = await scheduler.arm("/door", raw)

    assert result.accepted is True
    assert result.delay_seconds == 50
    assert store.get("/door").fire_at_ms == 1_050_000


@pytest.mark.asyncio
async def test_early_expiry_does_not_fire_and_reschedules() -> None:
    scheduler, invoker, store, backend, clock = _build()
    await scheduler.arm("/", 50)

    clock.now = 1_020.0
    await backend.fire("/")

    assert invoker.calls == []
    assert store.get("/") is not None
    assert backend.jobs["/"][0] == 1_050_000

    clock.now = 1_050.0
    await backend.fire("/")

    assert invoker.calls == ["floor"]
    assert store.get("/") is None


@pytest.mark.asyncio
async def test_duplicate_expiry_delivery_fires_once() -> None:
    scheduler, invoker, _, _, clock = _build()
    await scheduler.arm("/", 1)
    clock.now = 2_000.0

    await asyncio.gather(scheduler.on_expiry("/"), scheduler.on_expiry("/"))
    await scheduler.on_expiry("/")

    assert invoker.calls == ["floor"]


@pytest.mark.asyncio
async def test_failed_delayed_action_still_clears_timer() -> None:
    scheduler, invoker, store, backend, clock = _build(invoker=_FakeInvoker(fail=("floor",)))
    await scheduler.arm("/", 5)
    clock.now = 1_005.0

    await backend.fire("/")

    assert invoker.calls == ["floor"]
    assert store.get("/") is None
    assert (await scheduler.arm("/", 5)).accepted is True


@pytest.mark.asyncio
async def test_raising_invoker_does_not_escape_expiry_handler() -> None:
    scheduler, invoker, store, backend, clock = _build(invoker=_FakeInvoker(raise_on=("floor",)))
    await scheduler.arm("/", 5)
    clock.now = 1_005.0

    await backend.fire("/")

    assert invoker.calls == ["floor"]
    assert scheduler.pending("/") is None


@pytest.mark.asyncio
async def test_concurrent_arms_create_single_timer() -> None:
    scheduler, _, store, backend, _ = _build()

    results = await asyncio.gather(*(scheduler.arm("/", 10 + i) for i in range(10)))

    assert sum(1 for item in results if item.accepted) == 1
    assert store.active_count() == 1
    assert backend.schedule_calls == 1


@pytest.mark.asyncio
async def test_keys_do_not_interfere() -> None:
    scheduler, invoker, store, backend, clock = _build()

    assert (await scheduler.arm("/a", 10)).accepted is True
    assert (await scheduler.arm("/b", 20)).accepted is True

    clock.now = 1_010.0
    await backend.fire("/a")

    assert invoker.calls == ["floor"]
    assert store.get("/a") is None
    assert store.get("/b") is not None


@pytest.mark.asyncio
async def test_cancel_removes_timer_and_is_noop_when_absent() -> None:
    scheduler, invoker, store, backend, _ = _build()
    await scheduler.arm("/", 10)

    assert await scheduler.cancel("/") is True
    assert store.get("/") is None
    assert backend.has_pending("/") is False
    assert await scheduler.cancel("/") is False

    await scheduler.on_expiry("/")
    assert invoker.calls == []


@pytest.mark.asyncio
async def test_arm_unknown_target_is_rejected_locally() -> None:
    scheduler, _, store, _, _ = _build()

    with pytest.raises(UnknownTargetError):
        await scheduler.arm("/", 10, target="garage")

    assert store.active_count() == 0


@pytest.mark.asyncio
async def test_backend_failure_rolls_back_record() -> None:
    class _BrokenBackend(_ManualBackend):
        def schedule(self, key: str, fire_at_ms: int, on_fire: Any) -> None:
            raise RuntimeError("scheduler down")

    scheduler, _, store, _, _ = _build(backend=_BrokenBackend())

    with pytest.raises(RuntimeError):
        await scheduler.arm("/", 10)

    assert store.get("/") is None


def test_restore_reschedules_persisted_timers() -> None:
    store = MemoryTimerStore()
    store.create_if_absent(PendingTimer(key="/a", fire_at_ms=900_000, target="floor"))
    store.create_if_absent(PendingTimer(key="/b", fire_at_ms=1_100_000, target="floor"))
    scheduler, _, _, backend, _ = _build(store=store)

    restored = scheduler.restore()

    assert restored == 2
    assert backend.jobs["/a"][0] == 900_000
    assert backend.jobs["/b"][0] == 1_100_000


@pytest.mark.asyncio
async def test_restored_overdue_timer_fires_on_expiry() -> None:
    store = MemoryTimerStore()
    store.create_if_absent(PendingTimer(key="/", fire_at_ms=900_000, target="street"))
    scheduler, invoker, _, backend, _ = _build(store=store)
    scheduler.restore()

    await backend.fire("/")

    assert invoker.calls == ["street"]
    assert store.active_count() == 0


@pytest.mark.asyncio
async def test_instances_sharing_a_store_fire_once() -> None:
    store = MemoryTimerStore()
    invoker = _FakeInvoker()
    clock = _Clock()
    first, _, _, first_backend, _ = _build(invoker=invoker, store=store, clock=clock)
    second, _, _, second_backend, _ = _build(invoker=invoker, store=store, clock=clock)

    assert (await first.arm("/", 10)).accepted is True
    assert second.restore() == 1
    clock.now = 1_010.0

    await asyncio.gather(first_backend.fire("/"), second_backend.fire("/"))

    assert invoker.calls == ["floor"]
    assert store.active_count() == 0


@pytest.mark.asyncio
async def test_claim_failure_keeps_record_and_retries() -> None:
    class _ClaimFailsOnce(MemoryTimerStore):
        def __init__(self) -> None:
            super().__init__()
            self.failures = 1

        def claim(self, key: str, fire_at_ms: int) -> bool:
            if self.failures:
                self.failures -= 1
                raise OSError("store unavailable")
            return super().claim(key, fire_at_ms)

    scheduler, invoker, store, backend, clock = _build(store=_ClaimFailsOnce())
    await scheduler.arm("/", 5)
    clock.now = 1_005.0

    await backend.fire("/")

    assert invoker.calls == []
    assert store.get("/") is not None
    assert backend.jobs["/"][0] == 1_006_000

    clock.now = 1_006.0
    await backend.fire("/")

    assert invoker.calls == ["floor"]
    assert store.get("/") is None


@pytest.mark.asyncio
async def test_key_locks_are_released_after_each_operation() -> None:
    scheduler, _, _, backend, clock = _build()

    await asyncio.gather(*(scheduler.arm(f"/door-{i}", 5) for i in range(20)))
    await scheduler.arm("/door-0", 5)
    assert scheduler._locks == {}

    clock.now = 1_005.0
    for i in range(20):
        await backend.fire(f"/door-{i}")
    await scheduler.cancel("/never-armed")

    assert scheduler._locks == {}


@pytest.mark.asyncio
async def test_blocking_store_does_not_stall_event_loop() -> None:
    ticks: list[int] = []

    class _SlowStore(MemoryTimerStore):
        ticks_seen = 0

        def create_if_absent(self, timer: PendingTimer) -> bool:
            time.sleep(0.2)
            _SlowStore.ticks_seen = len(ticks)
            return super().create_if_absent(timer)

    async def ticker() -> None:
        for _ in range(5):
            ticks.append(1)
            await asyncio.sleep(0.01)

    scheduler, _, _, _, _ = _build(store=_SlowStore())

    result, _ = await asyncio.gather(scheduler.arm("/", 10), ticker())

    assert result.accepted is True
    assert _SlowStore.ticks_seen >= 3
