import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from services.relayer.checkpoint import CheckpointStore
from services.relayer.job_queue import InMemoryJobQueue, RetryPolicy
from services.relayer.lifecycle import RelayContext
from services.relayer.tests.fakes import NFT_LOCKED, TRANSFER, FakeChain, eventually, make_log, make_settings


class RelayContextTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.checkpoint_path = Path(self._tmp.name) / 'lastProcessedBlock.json'
        self.checkpoint = CheckpointStore(self.checkpoint_path)
        self.queue = InMemoryJobQueue('lifecycle-test', RetryPolicy())
        self.chain = FakeChain()
        self.context = self._context()

    async def asyncTearDown(self) -> None:
        await self.context.cleanup()
        self._tmp.cleanup()

    def _context(self, **overrides: object) -> RelayContext:
        return RelayContext(
            make_settings(self.checkpoint_path, **overrides),
            queue=self.queue,
            checkpoint=self.checkpoint,
            connection_factory=lambda url: self.chain,
            reconnect_base_delay=0.01
        )

    async def _waiting(self) -> int:
        return (await self.queue.counts())['waiting']

    async def test_checkpoint_at_height_skips_backfill(self) -> None:
        self.checkpoint.write(50)
        self.chain.height = 50

        bundle = await self.context.initialize()

        self.assertEqual(self.chain.queries, [])
        self.assertEqual(self.checkpoint.read(), 50)
        self.assertTrue(bundle.subscriber.released)
        self.assertEqual(len(self.chain.subscriptions), 2)

    async def test_backfills_gap_and_advances_checkpoint(self) -> None:
        self.checkpoint.write(10)
        self.chain.height = 120
        self.chain.logs = {TRANSFER.topic: [make_log(5, 0), make_log(100, 0), make_log(120, 1)]}

        await self.context.initialize()

        self.assertEqual({(start, end) for _, start, end in self.chain.queries}, {(11, 120)})
        self.assertEqual(await self._waiting(), 2)
        self.assertEqual(self.checkpoint.read(), 120)
        self.assertFalse(self.context.checkpoint_held)

    async def test_live_events_advance_checkpoint(self) -> None:
        self.checkpoint.write(50)
        self.chain.height = 50
        await self.context.initialize()

        self.chain.push(NFT_LOCKED.topic, make_log(51, 0, args={'tokenId': 1, 'owner': '0x01'}))

        await eventually(lambda: self.checkpoint.read() == 51)
        self.assertEqual(await self._waiting(), 1)

    async def test_initialize_is_idempotent(self) -> None:
        first = await self.context.initialize()
        second = await self.context.initialize()

        self.assertIs(first, second)
        self.assertEqual(self.chain.open_count, 1)

    async def test_cleanup_releases_resources_and_allows_rebuild(self) -> None:
        first = await self.context.initialize()

        await first.cleanup()

        self.assertIsNone(self.context.bundle)
        self.assertEqual(self.chain.subscriptions, {})
        self.assertFalse(self.chain.is_open)

        second = await self.context.initialize()
        self.assertIsNot(first, second)
        self.assertTrue(self.chain.is_open)
        self.assertEqual(len(self.chain.subscriptions), 2)

    async def test_incomplete_backfill_holds_checkpoint(self) -> None:
        self.context = self._context(backfill_batch_blocks=50)
        self.checkpoint.write(10)
        self.chain.height = 200
        self.chain.failures.add((TRANSFER.topic, 111))
        await self.context.initialize()

        self.assertEqual(self.checkpoint.read(), 110)
        self.assertTrue(self.context.checkpoint_held)

        self.chain.push(TRANSFER.topic, make_log(201, 0))
        await eventually(self._waiting)
        self.assertEqual(self.checkpoint.read(), 110)

    async def test_checkpoint_ahead_of_chain_is_left_unchanged(self) -> None:
        self.checkpoint.write(500)
        self.chain.height = 100

        await self.context.initialize()

        self.assertEqual(self.chain.queries, [])
        self.assertEqual(self.checkpoint.read(), 500)

    async def test_dropped_stream_reconnects(self) -> None:
        self.chain.height = 10
        first = await self.context.initialize()

        self.chain.drop()

        await eventually(lambda: self.context.bundle is not None and self.context.bundle is not first)
        self.assertEqual(self.chain.open_count, 2)
        self.assertEqual(self.chain.close_count, 1)
        self.assertEqual(len(self.chain.subscriptions), 2)

    async def test_start_retries_until_node_is_reachable(self) -> None:
        attempts = []
        opener = self.chain.open

        async def flaky_open() -> None:
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError('node unavailable')
            await opener()

        self.chain.open = flaky_open
        self.context.start()

        await eventually(lambda: self.context.bundle is not None)
        self.assertEqual(len(attempts), 3)

    async def _push_same_block_with_slow_second_enqueue(self) -> None:
        original = self.queue.enqueue

        async def slow_second(name, payload):
            if payload['logIndex'] == 1:
                await asyncio.sleep(0.05)
            return await original(name, payload)

        patcher = patch.object(self.queue, 'enqueue', side_effect=slow_second)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.chain.push(TRANSFER.topic, make_log(200, 0))
        self.chain.push(TRANSFER.topic, make_log(200, 1))
        await eventually(lambda: self.checkpoint.read() == 200)

    async def test_dropped_stream_drains_buffered_logs_of_checkpointed_block(self) -> None:
        self.checkpoint.write(199)
        self.chain.height = 199
        first = await self.context.initialize()
        await self._push_same_block_with_slow_second_enqueue()

        self.chain.drop()

        await eventually(lambda: self.context.bundle is not None and self.context.bundle is not first)
        self.assertEqual(self.checkpoint.read(), 200)
        self.assertEqual(await self._waiting(), 2)

    async def test_cleanup_drains_buffered_logs_of_checkpointed_block(self) -> None:
        self.checkpoint.write(199)
        self.chain.height = 199
        await self.context.initialize()
        await self._push_same_block_with_slow_second_enqueue()

        await self.context.cleanup()

        self.assertEqual(self.checkpoint.read(), 200)
        self.assertEqual(await self._waiting(), 2)


if __name__ == '__main__':
    unittest.main()
