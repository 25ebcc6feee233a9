from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .backfill import BackfillScanner
from .chain import ChainConnection, ContractBinding
from .checkpoint import CheckpointStore
from .config import Settings
from .errors import NodeConnectionError
from .job_queue import JobQueue, create_job_queue
from .metrics import CHECKPOINT_BLOCK, NODE_RECONNECTS_TOTAL
from .subscriber import LiveEventSubscriber

LOGGER = logging.getLogger('relayer.lifecycle')


@dataclass
class ListenerResourceBundle:
    connection: ChainConnection
    contract_bindings: list[ContractBinding]
    queue: JobQueue
    subscriber: LiveEventSubscriber
    cleanup: Callable[[], Awaitable[None]]


class RelayContext:
    """Owns the node connection, queue and checkpoint for one set of contracts."""

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue | None = None,
        checkpoint: CheckpointStore | None = None,
        connection_factory: Callable[[str], ChainConnection] = ChainConnection,
        reconnect_base_delay: float = 1.0
    ) -> None:
        self.settings = settings
        self.queue = queue if queue is not None else create_job_queue(settings)
        self.checkpoint = checkpoint if checkpoint is not None else CheckpointStore(settings.checkpoint_path)
        self.bundle: ListenerResourceBundle | None = None
        self._connection_factory = connection_factory
        self._reconnect_base_delay = reconnect_base_delay
        self._lock = asyncio.Lock()
        self._closing = False
        self._supervisor: asyncio.Task | None = None
        self._starter: asyncio.Task | None = None
        self._last_checkpoint = 0
        self._checkpoint_held = False

    @property
    def checkpoint_held(self) -> bool:
        return self._checkpoint_held

    def _reconnect_delay(self, attempt: int) -> float:
        return min(self._reconnect_base_delay * 2 ** max(0, attempt - 1), self.settings.reconnect_max_delay_seconds)

    async def initialize(self) -> ListenerResourceBundle:
        async with self._lock:
            if self.bundle is not None:
                return self.bundle
            self._closing = False
            await self.queue.open()
            self.bundle = await self._bring_up()
            self._supervisor = asyncio.create_task(self._supervise(), name='relayer-supervisor')
            return self.bundle

    def start(self) -> None:
        if self._starter is not None and not self._starter.done():
            return
        self._starter = asyncio.create_task(self._initialize_until_ready(), name='relayer-startup')

    async def _initialize_until_ready(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                await self.initialize()
                return
            except Exception as exc:
                attempt += 1
                delay = self._reconnect_delay(attempt)
                LOGGER.error('listener startup failed attempt=%s retry_in=%ss error=%s', attempt, delay, exc)
                await asyncio.sleep(delay)

    async def _bring_up(self) -> ListenerResourceBundle:
        connection = self._connection_factory(self.settings.wss_url)
        await connection.open()
        subscriber: LiveEventSubscriber | None = None
        try:
            bindings = connection.bind(self.settings.contracts)
            subscriber = LiveEventSubscriber(
                connection,
                bindings,
                self.queue,
                channel_size=self.settings.channel_size
            )
            # Subscriptions go live before the height is read; their logs wait in the channel until release().
            await subscriber.subscribe(self._advance_checkpoint)

            last_processed = self.checkpoint.read()
            current_block = await connection.block_number()
            self._last_checkpoint = last_processed
            self._checkpoint_held = False
            LOGGER.info('block sync state last_processed_block=%s current_block=%s', last_processed, current_block)

            skip_keys: set[tuple[str, str, int]] = set()
            if last_processed < current_block:
                scanner = BackfillScanner(
                    connection,
                    bindings,
                    self.queue,
                    batch_blocks=self.settings.backfill_batch_blocks
                )
                result = await scanner.scan(last_processed + 1, current_block)
                skip_keys = result.keys
                if result.complete:
                    self._write_checkpoint(current_block)
                else:
                    self._write_checkpoint(result.safe_through)
                    self._checkpoint_held = True
                    LOGGER.warning(
                        'backfill incomplete; checkpoint held at block=%s until the range is re-scanned',
                        result.safe_through
                    )
            elif last_processed > current_block:
                LOGGER.warning(
                    'checkpoint is ahead of the chain last_processed_block=%s current_block=%s; leaving it unchanged',
                    last_processed,
                    current_block
                )
            else:
                LOGGER.info('backfill skipped; checkpoint is at chain height block=%s', current_block)

            subscriber.release(skip_keys, through_block=current_block)
        except BaseException:
            if subscriber is not None:
                await subscriber.unsubscribe()
            await connection.close()
            raise

        LOGGER.info(
            'event listeners initialized contracts=%s subscriptions=%s',
            ','.join(binding.name for binding in bindings),
            len(subscriber.subscription_ids)
        )
        return ListenerResourceBundle(
            connection=connection,
            contract_bindings=bindings,
            queue=self.queue,
            subscriber=subscriber,
            cleanup=self.cleanup
        )

    def _write_checkpoint(self, block_number: int) -> None:
        if block_number <= self._last_checkpoint:
            return
        self.checkpoint.write(block_number)
        self._last_checkpoint = block_number
        CHECKPOINT_BLOCK.set(block_number)

    async def _advance_checkpoint(self, block_number: int) -> None:
        if self._checkpoint_held:
            return
        try:
            self._write_checkpoint(block_number)
        except OSError:
            LOGGER.exception('checkpoint write failed block=%s', block_number)

    async def _supervise(self) -> None:
        while not self._closing:
            bundle = self.bundle
            if bundle is None:
                return
            try:
                await bundle.subscriber.wait_closed()
                LOGGER.warning('live log stream ended')
            except NodeConnectionError as exc:
                LOGGER.warning('live log stream dropped error=%s', exc.detail)
            if self._closing:
                return

            async with self._lock:
                if self.bundle is not bundle:
                    continue
                self.bundle = None
                await self._tear_down(bundle)

                attempt = 0
                while not self._closing:
                    attempt += 1
                    delay = self._reconnect_delay(attempt)
                    LOGGER.info('reconnecting to node attempt=%s delay=%ss', attempt, delay)
                    await asyncio.sleep(delay)
                    try:
                        self.bundle = await self._bring_up()
                    except Exception as exc:
                        LOGGER.error('reconnect failed attempt=%s error=%s', attempt, exc)
                        continue
                    NODE_RECONNECTS_TOTAL.inc()
                    break

    async def _tear_down(self, bundle: ListenerResourceBundle) -> None:
        await bundle.subscriber.unsubscribe()
        await bundle.connection.close()

    async def cleanup(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        background = [task for task in (self._starter, self._supervisor) if task is not None and task is not current]
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._starter = None
        self._supervisor = None

        async with self._lock:
            bundle, self.bundle = self.bundle, None
            if bundle is not None:
                await self._tear_down(bundle)
            await self.queue.close()
        LOGGER.info('listener resources released')
