from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from .chain import ChainConnection, ContractBinding
from .config import EventDescriptor
from .errors import LogParseError, NodeConnectionError
from .job_queue import JobQueue
from .metrics import EVENTS_DISCARDED_TOTAL, EVENTS_ENQUEUED_TOTAL
from .normalizer import build_canonical_event

LOGGER = logging.getLogger('relayer.subscriber')

ProcessedCallback = Callable[[int], Awaitable[None]]


class LiveEventSubscriber:
    """Streams contract logs into the work queue.

    A reader task moves raw notifications from the node onto a bounded channel;
    a single consumer task normalizes and enqueues them. The consumer stays
    parked until ``release()`` so logs that arrive while a backfill is running
    are buffered instead of racing it.
    """

    def __init__(
        self,
        chain: ChainConnection,
        bindings: list[ContractBinding],
        queue: JobQueue,
        channel_size: int = 10000,
        drain_timeout_seconds: float = 30.0
    ) -> None:
        self.chain = chain
        self.bindings = bindings
        self.queue = queue
        self.drain_timeout_seconds = drain_timeout_seconds
        self._channel: asyncio.Queue[tuple[ContractBinding, EventDescriptor, Mapping[str, Any]]] = asyncio.Queue(
            maxsize=channel_size
        )
        self._routes: dict[str, tuple[ContractBinding, EventDescriptor]] = {}
        self._released = asyncio.Event()
        self._skip_keys: frozenset[tuple[str, str, int]] = frozenset()
        self._skip_through = -1
        self._on_processed: ProcessedCallback | None = None
        self._reader: asyncio.Task | None = None
        self._consumer: asyncio.Task | None = None

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._routes)

    @property
    def released(self) -> bool:
        return self._released.is_set()

    async def subscribe(self, on_processed: ProcessedCallback) -> None:
        if self._reader is not None:
            return
        self._on_processed = on_processed

        for binding in self.bindings:
            for descriptor in binding.events:
                subscription_id = await self.chain.subscribe_logs(binding.address, descriptor.topic)
                self._routes[subscription_id] = (binding, descriptor)
                LOGGER.info(
                    'subscribed contract=%s event=%s subscription_id=%s',
                    binding.name,
                    descriptor.name,
                    subscription_id
                )

        self._reader = asyncio.create_task(self._read(), name='relayer-live-reader')
        self._consumer = asyncio.create_task(self._consume(), name='relayer-live-consumer')

    def release(self, skip_keys: Iterable[tuple[str, str, int]] = (), through_block: int = -1) -> None:
        self._skip_keys = frozenset(skip_keys)
        self._skip_through = through_block
        self._released.set()
        LOGGER.info('live delivery released buffered=%s through_block=%s', self._channel.qsize(), through_block)

    async def _read(self) -> None:
        async for subscription_id, log in self.chain.notifications():
            route = self._routes.get(subscription_id)
            if route is None:
                continue
            binding, descriptor = route
            await self._channel.put((binding, descriptor, log))
        raise NodeConnectionError('log stream closed by node')

    async def _consume(self) -> None:
        await self._released.wait()
        while True:
            binding, descriptor, log = await self._channel.get()
            try:
                await self.handle(binding, descriptor, log)
            except Exception:
                LOGGER.exception('live event handling failed contract=%s event=%s', binding.name, descriptor.name)
            finally:
                self._channel.task_done()

    async def handle(self, binding: ContractBinding, descriptor: EventDescriptor, log: Mapping[str, Any]) -> bool:
        if log.get('removed'):
            EVENTS_DISCARDED_TOTAL.labels(source='live', reason='removed').inc()
            LOGGER.info(
                'discarded removed log contract=%s event=%s block=%s',
                binding.name,
                descriptor.name,
                log.get('blockNumber')
            )
            return False

        try:
            event = build_canonical_event(
                event_name=descriptor.name,
                inputs=descriptor.inputs,
                args=binding.decode(descriptor, log),
                log=log,
                source_contract=binding.name
            )
        except LogParseError as exc:
            EVENTS_DISCARDED_TOTAL.labels(source='live', reason='parse_error').inc()
            LOGGER.warning('skipped unparsable live log event=%s error=%s', descriptor.name, exc.detail)
            return False

        if event.block_number <= self._skip_through and event.dedupe_key in self._skip_keys:
            EVENTS_DISCARDED_TOTAL.labels(source='live', reason='duplicate').inc()
            return False

        try:
            await self.queue.enqueue(event.event_name, event.to_payload())
        except Exception as exc:
            LOGGER.error(
                'live enqueue failed event=%s block=%s log_index=%s error=%s',
                event.event_name,
                event.block_number,
                event.log_index,
                exc
            )
            return False

        EVENTS_ENQUEUED_TOTAL.labels(source='live', event_name=event.event_name).inc()
        LOGGER.info(
            'live event enqueued event=%s block=%s tx_hash=%s log_index=%s',
            event.event_name,
            event.block_number,
            event.transaction_hash,
            event.log_index
        )
        if self._on_processed is not None:
            await self._on_processed(event.block_number)
        return True

    async def wait_closed(self) -> None:
        reader = self._reader
        if reader is None:
            return
        await asyncio.wait([reader])
        if reader.cancelled():
            return
        exc = reader.exception()
        if isinstance(exc, NodeConnectionError):
            raise exc
        if exc is not None:
            raise NodeConnectionError(f'log reader stopped: {exc}') from exc

    async def unsubscribe(self) -> None:
        for subscription_id in list(self._routes):
            await self.chain.unsubscribe(subscription_id)
        self._routes.clear()

        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return
        # The checkpoint may already name the block of a log still in the channel.
        if self.released and not consumer.done():
            await self._drain()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

    async def _drain(self) -> None:
        pending = self._channel.qsize()
        try:
            await asyncio.wait_for(self._channel.join(), timeout=self.drain_timeout_seconds)
        except asyncio.TimeoutError:
            LOGGER.error(
                'live channel drain timed out pending=%s timeout=%ss',
                self._channel.qsize(),
                self.drain_timeout_seconds
            )
            return
        LOGGER.info('live channel drained events=%s', pending)
