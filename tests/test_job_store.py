"""Tests for the job queue backing stores."""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import redis

from config.settings import RedisSettings
from conftest import make_crawl_job
from server.job_store import (
    CLAIM_SCRIPT,
    SEQUENCE_SPACE,
    InMemoryJobStore,
    JobRecord,
    JobState,
    RedisJobStore,
    create_job_store,
)


def make_record(seq=1, state=JobState.WAITING, priority=10, **overrides) -> JobRecord:
    fields = dict(
        id=str(seq),
        data=make_crawl_job(),
        state=state,
        priority=priority,
        seq=seq,
        created_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    fields.update(overrides)
    return JobRecord(**fields)


class TestJobRecord:
    """Test suite for JobRecord serialization and scoring."""

    def test_json_round_trip(self):
        record = make_record(attempts_made=2, progress=40, error="HTTP 503", result={"status": "failed"})
        record.add_log("Attempt 2 failed")

        restored = JobRecord.from_dict(json.loads(json.dumps(record.to_dict())))

        assert restored == record

    def test_waiting_score_orders_by_priority_then_sequence(self):
        urgent_late = make_record(seq=50, priority=1)
        normal_early = make_record(seq=1, priority=10)
        normal_late = make_record(seq=2, priority=10)
        assert urgent_late.score() < normal_early.score() < normal_late.score()
        assert normal_late.score() == 10 * SEQUENCE_SPACE + 2

    def test_delayed_score_is_run_time(self):
        assert make_record(state=JobState.DELAYED, run_at=1234.5).score() == 1234.5


class TestInMemoryJobStore:
    """Test suite for the memory-only store."""

    @pytest.mark.asyncio
    async def test_claim_order_and_activation(self):
        store = InMemoryJobStore()
        await store.put(make_record(seq=1, priority=10))
        await store.put(make_record(seq=2, priority=5))

        first = await store.claim()
        second = await store.claim()

        assert [first.id, second.id] == ["2", "1"]
        assert first.state == JobState.ACTIVE
        assert first.started_at is not None
        assert await store.claim() is None
        assert (await store.counts())["active"] == 2

    @pytest.mark.asyncio
    async def test_ids_are_sequential(self):
        store = InMemoryJobStore()
        assert [await store.next_id() for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_promote_due(self):
        store = InMemoryJobStore()
        await store.put(make_record(seq=1, state=JobState.DELAYED, run_at=100.0))
        await store.put(make_record(seq=2, state=JobState.DELAYED, run_at=200.0))

        assert await store.promote_due(now=150.0) == 1
        counts = await store.counts()
        assert counts["waiting"] == 1
        assert counts["delayed"] == 1
        assert (await store.get("1")).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_purge_only_terminal_jobs(self):
        store = InMemoryJobStore()
        await store.put(make_record(seq=1, state=JobState.COMPLETED))
        await store.put(make_record(seq=2, state=JobState.FAILED))
        await store.put(make_record(seq=3, state=JobState.WAITING))

        assert await store.purge(cutoff=float("inf")) == 2
        assert await store.get("1") is None
        assert await store.get("3") is not None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        store = InMemoryJobStore()
        await store.put(make_record(seq=1))

        record = await store.get("1")
        record.progress = 99

        assert (await store.get("1")).progress == 0


class TestRedisJobStore:
    """Test suite for the Redis store against a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.pipeline.return_value = MagicMock()
        return client

    @pytest.fixture
    def store(self, client):
        return RedisJobStore(RedisSettings(), prefix="crawler:jobs", client=client)

    @pytest.mark.asyncio
    async def test_next_id_uses_incr(self, store, client):
        client.incr.return_value = 7
        assert await store.next_id() == 7
        client.incr.assert_called_once_with("crawler:jobs:id")

    @pytest.mark.asyncio
    async def test_put_moves_record_between_sets(self, store, client):
        record = make_record(seq=3)
        await store.put(record)

        pipe = client.pipeline.return_value
        removed_from = {call.args[0] for call in pipe.zrem.call_args_list}
        assert removed_from == {
            "crawler:jobs:active", "crawler:jobs:delayed",
            "crawler:jobs:completed", "crawler:jobs:failed",
        }
        pipe.zadd.assert_called_once_with("crawler:jobs:waiting", {"3": record.score()})
        key, payload = pipe.set.call_args.args
        assert key == "crawler:jobs:job:3"
        assert json.loads(payload)["state"] == "waiting"
        pipe.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_claim_pops_lowest_score(self, store, client):
        script = client.register_script.return_value
        script.return_value = "5"
        client.get.return_value = json.dumps(make_record(seq=5).to_dict())

        record = await store.claim()

        client.register_script.assert_called_once_with(CLAIM_SCRIPT)
        assert script.call_args.kwargs["keys"] == ["crawler:jobs:waiting", "crawler:jobs:active"]
        assert record.id == "5"
        assert record.state == JobState.ACTIVE
        zadd_key = client.pipeline.return_value.zadd.call_args.args[0]
        assert zadd_key == "crawler:jobs:active"

    @pytest.mark.asyncio
    async def test_claim_empty_queue(self, store, client):
        client.register_script.return_value.return_value = None
        assert await store.claim() is None
        client.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_claim_registers_script_once(self, store, client):
        client.register_script.return_value.return_value = None
        await store.claim()
        await store.claim()
        client.register_script.assert_called_once()

    @pytest.mark.asyncio
    async def test_claimed_id_without_record_is_dropped(self, store, client):
        client.register_script.return_value.return_value = "9"
        client.get.return_value = None

        assert await store.claim() is None
        client.zrem.assert_called_once_with("crawler:jobs:active", "9")

    @pytest.mark.asyncio
    async def test_promote_due_skips_ids_taken_by_another_worker(self, store, client):
        client.zrangebyscore.return_value = ["3", "4"]
        client.zrem.side_effect = [1, 0]
        client.get.return_value = json.dumps(make_record(seq=3, state=JobState.DELAYED, run_at=1.0).to_dict())

        assert await store.promote_due(now=10.0) == 1
        client.zrangebyscore.assert_called_once_with("crawler:jobs:delayed", "-inf", 10.0)
        assert client.pipeline.return_value.zadd.call_args.args[0] == "crawler:jobs:waiting"

    @pytest.mark.asyncio
    async def test_counts(self, store, client):
        client.pipeline.return_value.execute.return_value = [1, 2, 3, 4, 5]
        assert await store.counts() == {"waiting": 1, "active": 2, "delayed": 3, "completed": 4, "failed": 5}

    @pytest.mark.asyncio
    async def test_purge(self, store, client):
        client.zrangebyscore.side_effect = [["1", "2"], ["3"]]

        assert await store.purge(cutoff=100.0) == 3
        deleted = [call.args[0] for call in client.delete.call_args_list]
        assert deleted == ["crawler:jobs:job:1", "crawler:jobs:job:2", "crawler:jobs:job:3"]

    @pytest.mark.asyncio
    async def test_get_missing(self, store, client):
        client.get.return_value = None
        assert await store.get("nope") is None


class TestCreateJobStore:
    """Test suite for store selection."""

    @pytest.mark.asyncio
    async def test_falls_back_to_memory(self):
        with patch("server.job_store.redis.Redis") as redis_cls:
            redis_cls.return_value.ping.side_effect = redis.ConnectionError("refused")
            store = await create_job_store(RedisSettings(port=1), "crawler:jobs")
        assert isinstance(store, InMemoryJobStore)

    @pytest.mark.asyncio
    async def test_uses_redis_when_reachable(self):
        with patch("server.job_store.redis.Redis") as redis_cls:
            redis_cls.return_value.ping.return_value = True
            store = await create_job_store(RedisSettings(db=2), "crawler:jobs")
        assert isinstance(store, RedisJobStore)
        assert redis_cls.call_args.kwargs["db"] == 2
        assert redis_cls.call_args.kwargs["decode_responses"] is True
