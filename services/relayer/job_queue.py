from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg

from .config import Settings
from .errors import EnqueueError

LOGGER = logging.getLogger('relayer.queue')

WAITING = 'waiting'
ACTIVE = 'active'
COMPLETED = 'completed'
FAILED = 'failed'
JOB_STATES = (WAITING, ACTIVE, COMPLETED, FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    backoff_delay_ms: int = 5000
    keep_completed: int = 500
    lock_seconds: int = 60

    def delay_for(self, attempts_made: int) -> timedelta:
        if attempts_made <= 0:
            return timedelta(0)
        return timedelta(milliseconds=self.backoff_delay_ms * (2 ** (attempts_made - 1)))


@dataclass
class QueueJob:
    id: int
    name: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    state: str
    run_at: datetime
    created_at: datetime
    locked_until: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'payload': self.payload,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'state': self.state,
            'run_at': self.run_at.isoformat(),
            'created_at': self.created_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'last_error': self.last_error
        }


class JobQueue:
    def __init__(self, name: str, policy: RetryPolicy) -> None:
        self.name = name
        self.policy = policy

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def enqueue(self, name: str, payload: dict[str, Any]) -> QueueJob:
        raise NotImplementedError

    async def reserve(self) -> QueueJob | None:
        raise NotImplementedError

    async def complete(self, job: QueueJob) -> None:
        raise NotImplementedError

    async def fail(self, job: QueueJob, error: str) -> bool:
        raise NotImplementedError

    async def failed_jobs(self, limit: int = 100) -> list[QueueJob]:
        raise NotImplementedError

    async def retry_failed(self, job_id: int) -> bool:
        raise NotImplementedError

    async def counts(self) -> dict[str, int]:
        raise NotImplementedError


class InMemoryJobQueue(JobQueue):
    """Process-local queue for development runs and tests; jobs do not survive a restart."""

    def __init__(
        self,
        name: str,
        policy: RetryPolicy,
        clock: Callable[[], datetime] = _utcnow
    ) -> None:
        super().__init__(name, policy)
        self.clock = clock
        self._jobs: dict[int, QueueJob] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def enqueue(self, name: str, payload: dict[str, Any]) -> QueueJob:
        try:
            stored_payload = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as exc:
            raise EnqueueError(f'cannot enqueue {name} on {self.name}: {exc}') from exc

        now = self.clock()
        async with self._lock:
            job = QueueJob(
                id=next(self._ids),
                name=name,
                payload=stored_payload,
                attempts_made=0,
                max_attempts=self.policy.attempts,
                state=WAITING,
                run_at=now,
                created_at=now
            )
            self._jobs[job.id] = job
        return replace(job)

    async def reserve(self) -> QueueJob | None:
        now = self.clock()
        async with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if (job.state == WAITING and job.run_at <= now)
                or (job.state == ACTIVE and job.locked_until is not None and job.locked_until < now)
            ]
            if not due:
                return None
            job = min(due, key=lambda item: (item.run_at, item.id))
            job.state = ACTIVE
            job.locked_until = now + timedelta(seconds=self.policy.lock_seconds)
            return replace(job)

    async def complete(self, job: QueueJob) -> None:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                return
            stored.state = COMPLETED
            stored.locked_until = None
            stored.finished_at = self.clock()

            completed = sorted(
                (item for item in self._jobs.values() if item.state == COMPLETED),
                key=lambda item: (item.finished_at, item.id),
                reverse=True
            )
            for stale in completed[self.policy.keep_completed:]:
                del self._jobs[stale.id]

    async def fail(self, job: QueueJob, error: str) -> bool:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                return False
            now = self.clock()
            stored.attempts_made += 1
            stored.last_error = error
            stored.locked_until = None
            if stored.attempts_made >= stored.max_attempts:
                stored.state = FAILED
                stored.finished_at = now
                return True
            stored.state = WAITING
            stored.run_at = now + self.policy.delay_for(stored.attempts_made)
            return False

    async def get(self, job_id: int) -> QueueJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    async def failed_jobs(self, limit: int = 100) -> list[QueueJob]:
        async with self._lock:
            failed = [replace(job) for job in self._jobs.values() if job.state == FAILED]
        failed.sort(key=lambda item: item.id)
        return failed[:limit]

    async def retry_failed(self, job_id: int) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != FAILED:
                return False
            job.state = WAITING
            job.attempts_made = 0
            job.run_at = self.clock()
            job.finished_at = None
            return True

    async def counts(self) -> dict[str, int]:
        async with self._lock:
            result = {state: 0 for state in JOB_STATES}
            for job in self._jobs.values():
                result[job.state] += 1
            return result


_SCHEMA = '''
CREATE TABLE IF NOT EXISTS relay_jobs (
  id BIGSERIAL PRIMARY KEY,
  queue_name TEXT NOT NULL,
  name TEXT NOT NULL,
  payload JSONB NOT NULL,
  attempts_made INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL,
  state TEXT NOT NULL DEFAULT 'waiting',
  run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  locked_until TIMESTAMPTZ,
  last_error TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  finished_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS relay_jobs_due_idx ON relay_jobs (queue_name, state, run_at, id);
'''

_JOB_COLUMNS = '''
  id, name, payload::text AS payload, attempts_made, max_attempts, state,
  run_at, created_at, locked_until, finished_at, last_error
'''


def _job_from_row(row: Any) -> QueueJob:
    return QueueJob(
        id=int(row['id']),
        name=str(row['name']),
        payload=json.loads(row['payload']),
        attempts_made=int(row['attempts_made']),
        max_attempts=int(row['max_attempts']),
        state=str(row['state']),
        run_at=row['run_at'],
        created_at=row['created_at'],
        locked_until=row['locked_until'],
        finished_at=row['finished_at'],
        last_error=row['last_error']
    )


class PostgresJobQueue(JobQueue):
    def __init__(self, name: str, policy: RetryPolicy, dsn: str) -> None:
        super().__init__(name, policy)
        self.dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def open(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(dsn=self.dsn, min_size=1, max_size=10)
        async with self._pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        LOGGER.info('job queue ready queue=%s backend=postgres', self.name)

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()

    def _require(self) -> asyncpg.Pool:
        if self._pool is None:
            raise EnqueueError(f'job queue {self.name} is not open')
        return self._pool

    async def ping(self) -> None:
        async with self._require().acquire() as conn:
            await conn.fetchval('SELECT 1')

    async def enqueue(self, name: str, payload: dict[str, Any]) -> QueueJob:
        try:
            async with self._require().acquire() as conn:
                row = await conn.fetchrow(
                    '''
                    INSERT INTO relay_jobs (queue_name, name, payload, max_attempts)
                    VALUES ($1, $2, $3::jsonb, $4)
                    RETURNING
                    ''' + _JOB_COLUMNS,
                    self.name,
                    name,
                    json.dumps(payload),
                    self.policy.attempts
                )
        except EnqueueError:
            raise
        except (asyncpg.PostgresError, OSError) as exc:
            raise EnqueueError(f'cannot enqueue {name} on {self.name}: {exc}') from exc
        return _job_from_row(row)

    async def reserve(self) -> QueueJob | None:
        async with self._require().acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE relay_jobs
                SET state = 'active', locked_until = NOW() + make_interval(secs => $2)
                WHERE id = (
                  SELECT id FROM relay_jobs
                  WHERE queue_name = $1
                    AND (
                      (state = 'waiting' AND run_at <= NOW())
                      OR (state = 'active' AND locked_until < NOW())
                    )
                  ORDER BY run_at, id
                  LIMIT 1
                  FOR UPDATE SKIP LOCKED
                )
                RETURNING
                ''' + _JOB_COLUMNS,
                self.name,
                float(self.policy.lock_seconds)
            )
        return _job_from_row(row) if row is not None else None

    async def complete(self, job: QueueJob) -> None:
        async with self._require().acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    '''
                    UPDATE relay_jobs
                    SET state = 'completed', locked_until = NULL, finished_at = NOW()
                    WHERE id = $1
                    ''',
                    job.id
                )
                await conn.execute(
                    '''
                    DELETE FROM relay_jobs
                    WHERE id IN (
                      SELECT id FROM relay_jobs
                      WHERE queue_name = $1 AND state = 'completed'
                      ORDER BY finished_at DESC, id DESC
                      OFFSET $2
                    )
                    ''',
                    self.name,
                    self.policy.keep_completed
                )

    async def fail(self, job: QueueJob, error: str) -> bool:
        attempts_made = job.attempts_made + 1
        exhausted = attempts_made >= job.max_attempts
        delay = self.policy.delay_for(attempts_made)

        async with self._require().acquire() as conn:
            if exhausted:
                await conn.execute(
                    '''
                    UPDATE relay_jobs
                    SET state = 'failed', attempts_made = $2, last_error = $3,
                        locked_until = NULL, finished_at = NOW()
                    WHERE id = $1
                    ''',
                    job.id,
                    attempts_made,
                    error
                )
            else:
                await conn.execute(
                    '''
                    UPDATE relay_jobs
                    SET state = 'waiting', attempts_made = $2, last_error = $3,
                        locked_until = NULL, run_at = NOW() + $4::interval
                    WHERE id = $1
                    ''',
                    job.id,
                    attempts_made,
                    error,
                    delay
                )
        return exhausted

    async def failed_jobs(self, limit: int = 100) -> list[QueueJob]:
        async with self._require().acquire() as conn:
            rows = await conn.fetch(
                'SELECT ' + _JOB_COLUMNS + '''
                FROM relay_jobs
                WHERE queue_name = $1 AND state = 'failed'
                ORDER BY id
                LIMIT $2
                ''',
                self.name,
                limit
            )
        return [_job_from_row(row) for row in rows]

    async def retry_failed(self, job_id: int) -> bool:
        async with self._require().acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE relay_jobs
                SET state = 'waiting', attempts_made = 0, run_at = NOW(), finished_at = NULL
                WHERE id = $1 AND queue_name = $2 AND state = 'failed'
                RETURNING id
                ''',
                job_id,
                self.name
            )
        return row is not None

    async def counts(self) -> dict[str, int]:
        async with self._require().acquire() as conn:
            rows = await conn.fetch(
                'SELECT state, COUNT(*) AS total FROM relay_jobs WHERE queue_name = $1 GROUP BY state',
                self.name
            )
        result = {state: 0 for state in JOB_STATES}
        for row in rows:
            result[str(row['state'])] = int(row['total'])
        return result


def create_job_queue(settings: Settings) -> JobQueue:
    policy = RetryPolicy(
        attempts=settings.job_attempts,
        backoff_delay_ms=settings.job_backoff_ms,
        keep_completed=settings.keep_completed,
        lock_seconds=settings.job_lock_seconds
    )
    if settings.queue_backend == 'memory':
        LOGGER.warning('using in-memory job queue queue=%s; jobs will not survive a restart', settings.queue_name)
        return InMemoryJobQueue(settings.queue_name, policy)
    return PostgresJobQueue(settings.queue_name, policy, settings.postgres_dsn)
