"""Integration tests for LoadSession population control."""

from __future__ import annotations

import asyncio
import logging
import random

import pytest

from loadstage._internal.config import LoadTestConfig
from loadstage.engine.session import LoadSession
from loadstage.metrics.aggregator import MetricsAggregator
from loadstage.metrics.models import ITERATIONS, MetricSnapshot
from loadstage.patterns.stages import Stage


def _config(*stages: Stage, **overrides: object) -> LoadTestConfig:
    options: dict[str, object] = {
        "base_url": "http://fake.test",
        "stages": stages,
        "endpoints": ("/get",),
        "think_time": (0.01, 0.02),
        "tick_interval": 0.1,
        "stop_grace_period": 1.0,
        "seed": 1,
    }
    options.update(overrides)
    return LoadTestConfig(**options)  # type: ignore[arg-type]


def _session(config: LoadTestConfig, executor, **kwargs) -> LoadSession:
    return LoadSession(
        config,
        config.pattern,
        executor,
        MetricsAggregator(),
        rng=random.Random(config.seed),
        **kwargs,
    )


@pytest.mark.timeout(30)
class TestLoadSession:
    async def test_ramps_up_and_drains(self, fake_executor_cls):
        config = _config(Stage(0.5, 3), Stage(0.5, 3), Stage(0.5, 0))
        snapshots: list[MetricSnapshot] = []
        session = _session(config, fake_executor_cls(), on_snapshot=snapshots.append)

        await session.run()

        assert session.spawned_user_count >= 3
        assert session.active_user_count == 0
        assert session.draining_user_count == 0
        assert session.anomalies == 0
        assert len(session.store) == len(snapshots) > 0
        assert max(s.active_users for s in snapshots) == 3
        assert all(s.active_users <= s.target_users for s in snapshots)
        assert snapshots[-1].target_users == 0

    async def test_running_count_tracks_target(self, fake_executor_cls):
        config = _config(Stage(0.4, 4), Stage(0.4, 1))
        snapshots: list[MetricSnapshot] = []
        session = _session(config, fake_executor_cls(), on_snapshot=snapshots.append)

        await session.run()

        for snapshot in snapshots:
            assert snapshot.active_users == snapshot.target_users

    async def test_users_record_iterations(self, fake_executor_cls):
        config = _config(Stage(0.5, 2))
        aggregator = MetricsAggregator()
        session = LoadSession(config, config.pattern, fake_executor_cls(), aggregator)

        await session.run()

        assert aggregator.view(ITERATIONS).total >= 2

    async def test_stop_overrun_is_an_anomaly(self, fake_executor_cls, caplog):
        caplog.set_level(logging.WARNING, logger="loadstage")
        config = _config(Stage(0.2, 1), Stage(0.2, 0), stop_grace_period=0.1)
        session = _session(config, fake_executor_cls(delay=2.0))

        await session.run()

        assert session.anomalies == 1
        assert session.active_user_count == 0
        assert session.draining_user_count == 0
        assert "Scheduler anomaly" in caplog.text

    async def test_abort_stops_early(self, fake_executor_cls):
        config = _config(Stage(30.0, 2))
        session = _session(config, fake_executor_cls())

        asyncio.get_running_loop().call_later(0.3, session.abort, "operator stop")
        await asyncio.wait_for(session.run(), timeout=5.0)

        assert session.aborted
        assert session.active_user_count == 0
        assert session.target == 0

    async def test_stage_transitions_are_logged(self, fake_executor_cls, caplog):
        caplog.set_level(logging.INFO, logger="loadstage")
        config = _config(Stage(0.2, 1), Stage(0.2, 0))

        await _session(config, fake_executor_cls()).run()

        assert "Stage 1/2" in caplog.text
        assert "Stage 2/2" in caplog.text
        assert "Ramp-down complete" in caplog.text

    async def test_finished_users_release_their_shards(self, fake_executor_cls):
        config = _config(Stage(0.3, 4), Stage(0.3, 0), Stage(0.3, 4), Stage(0.3, 0))
        aggregator = MetricsAggregator()
        live_shards: list[int] = []
        session = LoadSession(
            config,
            config.pattern,
            fake_executor_cls(),
            aggregator,
            on_snapshot=lambda _snapshot: live_shards.append(aggregator.shard_count),
        )

        await session.run()

        assert session.spawned_user_count >= 6
        assert aggregator.shard_count == 0
        assert max(live_shards) <= 8
        assert aggregator.view(ITERATIONS).total > 0


@pytest.mark.timeout(30)
class TestSeededReplay:
    @staticmethod
    async def _requests(fake_executor_cls, seed: int) -> list[str]:
        config = _config(
            Stage(0.5, 1),
            Stage(0.5, 1),
            endpoints=("/a", "/b", "/c", "/d", "/e"),
            think_time=(0.001, 0.002),
            seed=seed,
        )
        executor = fake_executor_cls(delay=0.001)
        await LoadSession(config, config.pattern, executor, MetricsAggregator()).run()
        return executor.requests

    async def test_same_seed_replays_endpoint_sequence(self, fake_executor_cls):
        first = await self._requests(fake_executor_cls, seed=5)
        again = await self._requests(fake_executor_cls, seed=5)

        common = min(len(first), len(again))
        assert common >= 20
        assert first[:common] == again[:common]

    async def test_different_seed_changes_endpoint_sequence(self, fake_executor_cls):
        first = await self._requests(fake_executor_cls, seed=5)
        other = await self._requests(fake_executor_cls, seed=6)

        assert first[:20] != other[:20]
