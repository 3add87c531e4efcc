from typing import Any

import pytest

from snaptree.events import EventEmitter


@pytest.mark.unit
def test_listeners_fire_in_registration_order() -> None:
    emitter = EventEmitter()
    calls: list[str] = []

    emitter.on("stage:start", lambda p: calls.append(f"first:{p['stage']}"))
    emitter.on("stage:start", lambda p: calls.append(f"second:{p['stage']}"))
    emitter.emit("stage:start", {"stage": "discovery"})

    assert calls == ["first:discovery", "second:discovery"]


@pytest.mark.unit
def test_once_fires_a_single_time() -> None:
    emitter = EventEmitter()
    payloads: list[dict[str, Any]] = []

    emitter.once("pipeline:complete", payloads.append)
    emitter.emit("pipeline:complete", {"n": 1})
    emitter.emit("pipeline:complete", {"n": 2})

    assert payloads == [{"n": 1}]
    assert emitter.listener_count("pipeline:complete") == 0


@pytest.mark.unit
def test_duplicate_registration_fires_once_per_registration() -> None:
    emitter = EventEmitter()
    calls: list[int] = []

    def listener(payload: dict[str, Any]) -> None:
        calls.append(payload["n"])

    emitter.on("tick", listener)
    emitter.on("tick", listener)
    emitter.emit("tick", {"n": 7})
    emitter.off("tick", listener)
    emitter.emit("tick", {"n": 8})

    assert calls == [7, 7, 8]


@pytest.mark.unit
def test_off_ignores_unknown_listeners_and_clear_removes_all() -> None:
    emitter = EventEmitter()
    emitter.off("never", print)
    emitter.on("a", print)
    emitter.on("b", print)

    emitter.clear()

    assert emitter.listener_count("a") == 0
    assert emitter.listener_count("b") == 0
