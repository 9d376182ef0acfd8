"""Tests for ringback.core.timers: durable named alarms.

Covers:
- create/get/clear and replacement by name
- persistence through the state store (a second service sees the alarms)
- one-shot alarms removed on fire, periodic alarms advanced without replay
- consumption persisted before callbacks run
- callback failures logged, remaining alarms still fire
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from ringback.core.timers import ALARMS_KEY, TimerService

pytestmark = pytest.mark.unit


class TestAlarmTable:
    async def test_create_and_get(self, timers, clock):
        when = clock() + timedelta(minutes=2)
        await timers.create("meeting::a", when=when)

        alarm = await timers.get("meeting::a")
        assert alarm is not None
        assert alarm.fire_at == when
        assert not alarm.periodic

    async def test_create_replaces_existing(self, timers, clock):
        await timers.create("x", when=clock() + timedelta(minutes=1))
        await timers.create("x", when=clock() + timedelta(minutes=5))

        alarms = await timers.list_alarms()
        assert len(alarms) == 1
        assert alarms[0].fire_at == clock() + timedelta(minutes=5)

    async def test_create_requires_when_or_period(self, timers):
        with pytest.raises(ValueError):
            await timers.create("x")

    async def test_periodic_without_when_starts_one_period_out(self, timers, clock):
        alarm = await timers.create("calendar_poll", period_seconds=30)
        assert alarm.fire_at == clock() + timedelta(seconds=30)

    async def test_clear(self, timers, clock):
        await timers.create("x", when=clock())
        assert await timers.clear("x") is True
        assert await timers.clear("x") is False
        assert await timers.get("x") is None

    async def test_alarms_survive_new_service_instance(self, store, timers, clock):
        await timers.create("meeting::a", when=clock() + timedelta(minutes=1))

        reborn = TimerService(store, clock=clock)
        assert [alarm.name for alarm in await reborn.list_alarms()] == ["meeting::a"]

    async def test_next_fire_at(self, timers, clock):
        assert await timers.next_fire_at() is None
        await timers.create("late", when=clock() + timedelta(minutes=9))
        await timers.create("soon", when=clock() + timedelta(minutes=1))
        assert await timers.next_fire_at() == clock() + timedelta(minutes=1)

    async def test_due_lists_without_consuming(self, timers, clock):
        await timers.create("later", when=clock() + timedelta(minutes=3))
        await timers.create("b", when=clock() - timedelta(seconds=5))
        await timers.create("a", when=clock() - timedelta(seconds=10))

        assert [alarm.name for alarm in await timers.due()] == ["a", "b"]
        assert [alarm.name for alarm in await timers.due(clock() + timedelta(minutes=5))] == [
            "a",
            "b",
            "later",
        ]
        assert len(await timers.list_alarms()) == 3

    async def test_unreadable_entries_are_dropped(self, store, timers, clock):
        await store.set({ALARMS_KEY: {"bad": {"name": "bad"}}})
        await timers.create("good", when=clock())
        assert [alarm.name for alarm in await timers.list_alarms()] == ["good"]


class TestTick:
    async def test_one_shot_fires_once(self, timers, clock):
        fired: list[str] = []

        async def _callback(name: str) -> None:
            fired.append(name)

        await timers.create("meeting::a", when=clock() + timedelta(seconds=10))
        assert await timers.tick(_callback) == 0

        clock.advance(10)
        assert await timers.tick(_callback) == 1
        assert await timers.tick(_callback) == 0
        assert fired == ["meeting::a"]
        assert await timers.get("meeting::a") is None

    async def test_periodic_advances_past_now_without_replay(self, timers, clock):
        fired: list[str] = []

        async def _callback(name: str) -> None:
            fired.append(name)

        await timers.create("calendar_poll", when=clock(), period_seconds=30)
        clock.advance(95)

        assert await timers.tick(_callback) == 1
        assert fired == ["calendar_poll"]
        alarm = await timers.get("calendar_poll")
        assert alarm is not None
        assert alarm.fire_at == clock() + timedelta(seconds=25)

    async def test_due_alarms_fire_in_time_order(self, timers, clock):
        fired: list[str] = []

        async def _callback(name: str) -> None:
            fired.append(name)

        await timers.create("second", when=clock() - timedelta(seconds=1))
        await timers.create("first", when=clock() - timedelta(seconds=5))
        await timers.tick(_callback)
        assert fired == ["first", "second"]

    async def test_consumption_persisted_before_callback(self, timers, clock):
        seen_during_callback: list[object] = []

        async def _callback(name: str) -> None:
            seen_during_callback.append(await timers.get(name))

        await timers.create("meeting::a", when=clock())
        await timers.tick(_callback)
        assert seen_during_callback == [None]

    async def test_callback_failure_does_not_stop_others(self, timers, clock, caplog):
        fired: list[str] = []

        async def _callback(name: str) -> None:
            if name == "boom":
                raise RuntimeError("kaput")
            fired.append(name)

        await timers.create("boom", when=clock() - timedelta(seconds=2))
        await timers.create("fine", when=clock() - timedelta(seconds=1))

        assert await timers.tick(_callback) == 1
        assert fired == ["fine"]
        assert "Wake callback failed for alarm boom" in caplog.text
        assert await timers.get("boom") is None
