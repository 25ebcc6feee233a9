from __future__ import annotations

from prometheus_client import Counter, Gauge

EVENTS_ENQUEUED_TOTAL = Counter(
    'relayer_events_enqueued_total',
    'Contract events pushed onto the work queue',
    ['source', 'event_name']
)

EVENTS_DISCARDED_TOTAL = Counter(
    'relayer_events_discarded_total',
    'Contract events dropped before enqueue',
    ['source', 'reason']
)

JOBS_RELAYED_TOTAL = Counter(
    'relayer_jobs_relayed_total',
    'Jobs delivered to the downstream endpoint',
    ['event_name']
)

JOBS_FAILED_TOTAL = Counter(
    'relayer_jobs_failed_total',
    'Failed relay attempts',
    ['event_name', 'terminal']
)

CHECKPOINT_BLOCK = Gauge(
    'relayer_checkpoint_block',
    'Last block whose events are guaranteed enqueued'
)

NODE_RECONNECTS_TOTAL = Counter(
    'relayer_node_reconnects_total',
    'Reconnections to the chain node after a dropped stream'
)
