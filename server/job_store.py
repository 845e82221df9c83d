"""Backing stores for the crawl job queue.

Job records are JSON documents; queue membership is kept in one sorted set
per state. ``waiting`` is scored by priority then submission order,
``delayed`` by the time the job becomes runnable, and the remaining states
by the time the job entered them.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import redis

from config.settings import RedisSettings
from pipelines.models import CrawlJob

logger = logging.getLogger(__name__)

# Room for this many submissions per priority level in a waiting score
SEQUENCE_SPACE = 10 ** 9

# KEYS: waiting set, active set. ARGV: activation time
CLAIM_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1], 1)
if #popped == 0 then
    return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return popped[1]
"""


class JobState(str, Enum):
    """Job state enumeration."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    data: CrawlJob
    state: JobState
    priority: int
    seq: int
    created_at: datetime
    attempts_made: int = 0
    progress: int = 0
    run_at: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    logs: List[str] = field(default_factory=list)

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        timestamp = datetime.now().isoformat()
        self.logs.append(f"[{timestamp}] {message}")

    def score(self) -> float:
        """Sorted-set score for the record's current state."""
        if self.state == JobState.WAITING:
            return self.priority * SEQUENCE_SPACE + self.seq
        if self.state == JobState.DELAYED:
            return self.run_at or time.time()
        return time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "data": self.data.to_dict(),
            "state": self.state.value,
            "priority": self.priority,
            "seq": self.seq,
            "created_at": self.created_at.isoformat(),
            "attempts_made": self.attempts_made,
            "progress": self.progress,
            "run_at": self.run_at,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "result": self.result,
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        """Create JobRecord from dictionary."""
        data = dict(data)
        data["data"] = CrawlJob.from_dict(data["data"])
        data["state"] = JobState(data["state"])
        for key in ['created_at', 'started_at', 'finished_at']:
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        data["logs"] = list(data.get("logs") or [])
        return cls(**data)


class JobStore(ABC):
    """Storage interface used by ``JobQueue``.

    Implementations must be safe to call from concurrent worker tasks;
    ``claim`` in particular must never hand the same job to two callers.
    """

    async def connect(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def next_id(self) -> int:
        """Monotonically increasing job number."""

    @abstractmethod
    async def put(self, record: JobRecord):
        """Write the record and move it into the set for its state."""

    @abstractmethod
    async def save(self, record: JobRecord):
        """Write the record without touching set membership."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        pass

    @abstractmethod
    async def claim(self) -> Optional[JobRecord]:
        """Atomically take the best waiting job and mark it active."""

    @abstractmethod
    async def promote_due(self, now: Optional[float] = None) -> int:
        """Move delayed jobs whose run time has passed back to waiting."""

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        pass

    @abstractmethod
    async def purge(self, cutoff: float) -> int:
        """Delete terminal jobs that finished before ``cutoff`` (epoch seconds)."""


def _activate(record: JobRecord) -> JobRecord:
    record.state = JobState.ACTIVE
    record.started_at = datetime.now()
    record.run_at = None
    return record


class RedisJobStore(JobStore):
    """Job store on a dedicated Redis logical database.

    Keys, under ``prefix``:
        {prefix}:id            job counter (INCR)
        {prefix}:job:{id}      JSON job record
        {prefix}:{state}       sorted set of job ids per state
    """

    def __init__(self, settings: Optional[RedisSettings] = None, prefix: str = "crawler:jobs",
                 client: Optional[redis.Redis] = None):
        self.settings = settings or RedisSettings()
        self.prefix = prefix
        self.client = client
        self._claim = None

    @property
    def _claim_script(self):
        if self._claim is None:
            self._claim = self.client.register_script(CLAIM_SCRIPT)
        return self._claim

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def _state_key(self, state: JobState) -> str:
        return self._key(state.value)

    async def _run(self, func, *args):
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)

    async def connect(self):
        """Create the client if needed and check the server answers.

        Raises:
            redis.RedisError: Redis is unreachable
        """
        if self.client is None:
            self.client = redis.Redis(
                host=self.settings.host,
                port=self.settings.port,
                db=self.settings.db,
                password=self.settings.password,
                decode_responses=True,
            )
        await self._run(self.client.ping)
        logger.info(f"Connected to Redis at {self.settings.host}:{self.settings.port}/{self.settings.db}")

    async def close(self):
        if self.client:
            await self._run(self.client.close)

    async def next_id(self) -> int:
        return int(await self._run(self.client.incr, self._key("id")))

    def _put_sync(self, record: JobRecord):
        pipe = self.client.pipeline()
        for state in JobState:
            if state != record.state:
                pipe.zrem(self._state_key(state), record.id)
        pipe.zadd(self._state_key(record.state), {record.id: record.score()})
        pipe.set(self._key("job", record.id), json.dumps(record.to_dict()))
        pipe.execute()

    async def put(self, record: JobRecord):
        await self._run(self._put_sync, record)

    async def save(self, record: JobRecord):
        await self._run(self.client.set, self._key("job", record.id), json.dumps(record.to_dict()))

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raw = await self._run(self.client.get, self._key("job", job_id))
        if not raw:
            return None
        return JobRecord.from_dict(json.loads(raw))

    async def claim(self) -> Optional[JobRecord]:
        # Pop from waiting and add to active in one step
        job_id = await self._run(
            lambda: self._claim_script(
                keys=[self._state_key(JobState.WAITING), self._state_key(JobState.ACTIVE)],
                args=[time.time()],
            )
        )
        if not job_id:
            return None
        record = await self.get(job_id)
        if record is None:
            logger.warning(f"Dropping claimed job {job_id} with no record")
            await self._run(self.client.zrem, self._state_key(JobState.ACTIVE), job_id)
            return None
        await self.put(_activate(record))
        return record

    async def promote_due(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        delayed_key = self._state_key(JobState.DELAYED)
        due = await self._run(self.client.zrangebyscore, delayed_key, "-inf", now)

        promoted = 0
        for job_id in due:
            # Whoever removes the id owns the promotion
            if not await self._run(self.client.zrem, delayed_key, job_id):
                continue
            record = await self.get(job_id)
            if record is None:
                continue
            record.state = JobState.WAITING
            record.run_at = None
            await self.put(record)
            promoted += 1
        return promoted

    async def counts(self) -> Dict[str, int]:
        def count_sync():
            pipe = self.client.pipeline()
            for state in JobState:
                pipe.zcard(self._state_key(state))
            return pipe.execute()

        values = await self._run(count_sync)
        return {state.value: int(value) for state, value in zip(JobState, values)}

    async def purge(self, cutoff: float) -> int:
        removed = 0
        for state in TERMINAL_STATES:
            key = self._state_key(state)
            job_ids = await self._run(self.client.zrangebyscore, key, "-inf", cutoff)
            for job_id in job_ids:
                await self._run(self.client.zrem, key, job_id)
                await self._run(self.client.delete, self._key("job", job_id))
                removed += 1
        return removed


class InMemoryJobStore(JobStore):
    """Process-local job store.

    Records are kept serialized, so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self._counter = 0
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sets: Dict[JobState, Dict[str, float]] = {state: {} for state in JobState}
        self._lock = asyncio.Lock()

    async def next_id(self) -> int:
        async with self._lock:
            self._counter += 1
            return self._counter

    def _put_nolock(self, record: JobRecord):
        for members in self._sets.values():
            members.pop(record.id, None)
        self._sets[record.state][record.id] = record.score()
        self._records[record.id] = record.to_dict()

    async def put(self, record: JobRecord):
        async with self._lock:
            self._put_nolock(record)

    async def save(self, record: JobRecord):
        async with self._lock:
            self._records[record.id] = record.to_dict()

    async def get(self, job_id: str) -> Optional[JobRecord]:
        async with self._lock:
            data = self._records.get(job_id)
        return JobRecord.from_dict(data) if data else None

    async def claim(self) -> Optional[JobRecord]:
        async with self._lock:
            waiting = self._sets[JobState.WAITING]
            if not waiting:
                return None
            job_id = min(waiting, key=waiting.get)
            record = _activate(JobRecord.from_dict(self._records[job_id]))
            self._put_nolock(record)
            return record

    async def promote_due(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        async with self._lock:
            delayed = self._sets[JobState.DELAYED]
            due = [job_id for job_id, run_at in delayed.items() if run_at <= now]
            for job_id in due:
                record = JobRecord.from_dict(self._records[job_id])
                record.state = JobState.WAITING
                record.run_at = None
                self._put_nolock(record)
            return len(due)

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            return {state.value: len(members) for state, members in self._sets.items()}

    async def purge(self, cutoff: float) -> int:
        async with self._lock:
            removed = 0
            for state in TERMINAL_STATES:
                members = self._sets[state]
                for job_id in [j for j, finished in members.items() if finished < cutoff]:
                    del members[job_id]
                    self._records.pop(job_id, None)
                    removed += 1
            return removed


async def create_job_store(settings: RedisSettings, prefix: str) -> JobStore:
    """Connect to Redis, falling back to memory-only mode when it is unreachable."""
    store = RedisJobStore(settings, prefix=prefix)
    try:
        await store.connect()
        return store
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis not available: {e}. Job queue will run in memory-only mode.")
        return InMemoryJobStore()
