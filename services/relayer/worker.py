from __future__ import annotations

import asyncio
import logging
import re

import httpx

from .dead_letter import DeadLetterPublisher
from .errors import RelayError
from .job_queue import JobQueue, QueueJob
from .metrics import JOBS_FAILED_TOTAL, JOBS_RELAYED_TOTAL
from .normalizer import event_id

LOGGER = logging.getLogger('relayer.worker')

_LOWER_UPPER = re.compile(r'([a-z0-9])([A-Z])')
_ACRONYM_WORD = re.compile(r'([A-Z]+)([A-Z][a-z0-9]+)')


def to_kebab_case(value: str) -> str:
    value = _LOWER_UPPER.sub(r'\1-\2', value)
    value = _ACRONYM_WORD.sub(r'\1-\2', value)
    return value.lower()


class RelayWorkerPool:
    def __init__(
        self,
        downstream_base_url: str,
        client: httpx.AsyncClient | None = None,
        dead_letters: DeadLetterPublisher | None = None,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float = 10.0
    ) -> None:
        self.downstream_base_url = downstream_base_url.rstrip('/')
        self.dead_letters = dead_letters
        self.poll_interval_seconds = poll_interval_seconds
        self._client = client
        self._owns_client = client is None
        self._timeout_seconds = timeout_seconds
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def endpoint_for(self, event_name: str) -> str:
        return f'{self.downstream_base_url}/api/events/{to_kebab_case(event_name)}'

    async def start(self, queue: JobQueue, concurrency: int = 5) -> None:
        if self.running:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(queue, index), name=f'relayer-worker-{index}')
            for index in range(max(1, concurrency))
        ]
        LOGGER.info('relay workers started concurrency=%s downstream=%s', len(self._tasks), self.downstream_base_url)

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        if self.dead_letters is not None:
            self.dead_letters.flush()
        LOGGER.info('relay workers stopped')

    async def _run(self, queue: JobQueue, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.process_next(queue)
            except Exception:
                LOGGER.exception('relay worker loop failed worker=%s', index)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass

    async def process_next(self, queue: JobQueue) -> bool:
        job = await queue.reserve()
        if job is None:
            return False

        try:
            await self.relay(job)
        except RelayError as exc:
            exhausted = await queue.fail(job, exc.detail)
            JOBS_FAILED_TOTAL.labels(event_name=job.name, terminal=str(exhausted).lower()).inc()
            if exhausted:
                LOGGER.error(
                    'relay job moved to failure set job_id=%s event=%s attempts=%s error=%s',
                    job.id,
                    job.name,
                    job.attempts_made + 1,
                    exc.detail
                )
                self._publish_dead_letter(job, exc.detail)
            else:
                LOGGER.warning(
                    'relay attempt failed job_id=%s event=%s attempt=%s/%s status=%s error=%s',
                    job.id,
                    job.name,
                    job.attempts_made + 1,
                    job.max_attempts,
                    exc.status_code,
                    exc.detail
                )
            return True

        await queue.complete(job)
        JOBS_RELAYED_TOTAL.labels(event_name=job.name).inc()
        return True

    async def relay(self, job: QueueJob) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
            self._owns_client = True

        endpoint = self.endpoint_for(job.name)
        try:
            response = await self._client.post(
                endpoint,
                json=job.payload,
                headers={'X-Event-Id': event_id(job.payload)}
            )
        except httpx.HTTPError as exc:
            raise RelayError(f'POST {endpoint} failed: {exc}') from exc

        if not response.is_success:
            raise RelayError(
                f'POST {endpoint} returned {response.status_code}: {response.text[:200]}',
                status_code=response.status_code
            )

        LOGGER.info(
            'event relayed job_id=%s event=%s endpoint=%s status=%s',
            job.id,
            job.name,
            endpoint,
            response.status_code
        )

    def _publish_dead_letter(self, job: QueueJob, error: str) -> None:
        if self.dead_letters is None:
            return
        try:
            self.dead_letters.publish(job, error)
        except Exception:
            LOGGER.exception('dead letter publish failed job_id=%s', job.id)
