from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .chain import ChainConnection, ContractBinding
from .errors import LogParseError
from .job_queue import JobQueue
from .metrics import EVENTS_DISCARDED_TOTAL, EVENTS_ENQUEUED_TOTAL
from .normalizer import CanonicalEvent, build_canonical_event

LOGGER = logging.getLogger('relayer.backfill')


@dataclass
class BackfillResult:
    from_block: int
    to_block: int
    safe_through: int
    enqueued: int = 0
    keys: set[tuple[str, str, int]] = field(default_factory=set)

    @property
    def complete(self) -> bool:
        return self.safe_through >= self.to_block


class BackfillScanner:
    def __init__(
        self,
        chain: ChainConnection,
        bindings: list[ContractBinding],
        queue: JobQueue,
        batch_blocks: int = 2000
    ) -> None:
        self.chain = chain
        self.bindings = bindings
        self.queue = queue
        self.batch_blocks = max(1, batch_blocks)

    async def scan(self, from_block: int, to_block: int) -> BackfillResult:
        if from_block > to_block:
            return BackfillResult(from_block=from_block, to_block=to_block, safe_through=to_block)

        LOGGER.info('backfill started from_block=%s to_block=%s', from_block, to_block)
        first_failure: int | None = None

        def record_failure(block: int) -> None:
            nonlocal first_failure
            if first_failure is None or block < first_failure:
                first_failure = block

        events: list[CanonicalEvent] = []
        for binding in self.bindings:
            for descriptor in binding.events:
                for start in range(from_block, to_block + 1, self.batch_blocks):
                    end = min(start + self.batch_blocks - 1, to_block)
                    try:
                        logs = await self.chain.get_logs(binding.address, descriptor.topic, start, end)
                    except Exception as exc:
                        LOGGER.error(
                            'backfill query failed contract=%s event=%s from_block=%s to_block=%s error=%s',
                            binding.name,
                            descriptor.name,
                            start,
                            end,
                            exc
                        )
                        record_failure(start)
                        continue

                    for log in logs:
                        if log.get('removed'):
                            EVENTS_DISCARDED_TOTAL.labels(source='backfill', reason='removed').inc()
                            continue
                        try:
                            events.append(
                                build_canonical_event(
                                    event_name=descriptor.name,
                                    inputs=descriptor.inputs,
                                    args=binding.decode(descriptor, log),
                                    log=log,
                                    source_contract=binding.name
                                )
                            )
                        except LogParseError as exc:
                            EVENTS_DISCARDED_TOTAL.labels(source='backfill', reason='parse_error').inc()
                            LOGGER.warning('backfill skipped unparsable log event=%s error=%s', descriptor.name, exc.detail)

        events.sort(key=lambda item: item.sort_key)

        result = BackfillResult(from_block=from_block, to_block=to_block, safe_through=to_block)
        for event in events:
            try:
                await self.queue.enqueue(event.event_name, event.to_payload())
            except Exception as exc:
                LOGGER.error(
                    'backfill enqueue failed event=%s block=%s log_index=%s error=%s',
                    event.event_name,
                    event.block_number,
                    event.log_index,
                    exc
                )
                record_failure(event.block_number)
                continue
            EVENTS_ENQUEUED_TOTAL.labels(source='backfill', event_name=event.event_name).inc()
            result.enqueued += 1
            result.keys.add(event.dedupe_key)

        if first_failure is not None:
            result.safe_through = first_failure - 1

        LOGGER.info(
            'backfill finished from_block=%s to_block=%s total_events=%s enqueued=%s safe_through=%s',
            from_block,
            to_block,
            len(events),
            result.enqueued,
            result.safe_through
        )
        return result
