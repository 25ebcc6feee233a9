import json
import unittest
from unittest.mock import MagicMock

import httpx

from services.relayer.job_queue import COMPLETED, FAILED, WAITING, InMemoryJobQueue, RetryPolicy
from services.relayer.normalizer import event_id
from services.relayer.tests.fakes import eventually
from services.relayer.worker import RelayWorkerPool, to_kebab_case

PAYLOAD = {
    'eventName': 'NftLocked',
    'args': {'tokenId': '42', 'owner': '0x00000000000000000000000000000000000000aa'},
    'blockNumber': 100,
    'transactionHash': '0xabc',
    'logIndex': 1,
    'removed': False,
    'sourceContract': 'Token',
    'contractAddress': '0x5fbdb2315678afecb367f032d93f642f64180aa3'
}


class KebabCaseTests(unittest.TestCase):
    def test_event_names_map_to_endpoints(self) -> None:
        self.assertEqual(to_kebab_case('NftLocked'), 'nft-locked')
        self.assertEqual(to_kebab_case('NFTListed'), 'nft-listed')
        self.assertEqual(to_kebab_case('Transfer'), 'transfer')
        self.assertEqual(to_kebab_case('TokensBridgedToL2'), 'tokens-bridged-to-l2')


class RelayWorkerPoolTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.queue = InMemoryJobQueue('worker-test', RetryPolicy(attempts=3, backoff_delay_ms=0))
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))
        self.dead_letters = MagicMock()
        self.pool = RelayWorkerPool(
            'http://downstream.test/',
            client=self.client,
            dead_letters=self.dead_letters,
            poll_interval_seconds=0.01
        )

    async def asyncTearDown(self) -> None:
        await self.pool.stop()
        await self.client.aclose()

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={'ok': self.status_code < 300})

    async def test_success_posts_payload_and_completes_job(self) -> None:
        job = await self.queue.enqueue('NftLocked', PAYLOAD)

        self.assertTrue(await self.pool.process_next(self.queue))

        request = self.requests[0]
        self.assertEqual(request.method, 'POST')
        self.assertEqual(str(request.url), 'http://downstream.test/api/events/nft-locked')
        self.assertEqual(request.headers['X-Event-Id'], event_id(PAYLOAD))
        self.assertEqual(json.loads(request.content), PAYLOAD)
        self.assertEqual((await self.queue.get(job.id)).state, COMPLETED)

    async def test_empty_queue_reports_no_work(self) -> None:
        self.assertFalse(await self.pool.process_next(self.queue))
        self.assertEqual(self.requests, [])

    async def test_server_error_is_retried_until_failure_set(self) -> None:
        self.status_code = 500
        job = await self.queue.enqueue('NftLocked', PAYLOAD)

        for _ in range(2):
            self.assertTrue(await self.pool.process_next(self.queue))
        self.dead_letters.publish.assert_not_called()
        self.assertTrue(await self.pool.process_next(self.queue))

        self.assertFalse(await self.pool.process_next(self.queue))
        self.assertEqual(len(self.requests), 3)
        stored = await self.queue.get(job.id)
        self.assertEqual(stored.state, FAILED)
        self.assertEqual(stored.attempts_made, 3)
        self.assertIn('500', stored.last_error)
        self.dead_letters.publish.assert_called_once()

    async def test_transport_error_schedules_retry(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        pool = RelayWorkerPool('http://downstream.test', client=client)
        job = await self.queue.enqueue('Transfer', PAYLOAD)

        self.assertTrue(await pool.process_next(self.queue))

        stored = await self.queue.get(job.id)
        self.assertEqual(stored.state, WAITING)
        self.assertEqual(stored.attempts_made, 1)
        await client.aclose()

    async def test_started_pool_drains_queue(self) -> None:
        for block in range(5):
            await self.queue.enqueue('Transfer', {**PAYLOAD, 'blockNumber': block})

        await self.pool.start(self.queue, concurrency=2)
        self.assertTrue(self.pool.running)

        async def drained() -> bool:
            return (await self.queue.counts())[COMPLETED] == 5

        await eventually(drained)
        await self.pool.stop()
        self.assertFalse(self.pool.running)
        self.assertEqual(len(self.requests), 5)
        self.dead_letters.flush.assert_called()


if __name__ == '__main__':
    unittest.main()
