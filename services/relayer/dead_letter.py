from __future__ import annotations

import json
import logging
import uuid

from confluent_kafka import Producer

from .job_queue import QueueJob

LOGGER = logging.getLogger('relayer.dead_letter')


class DeadLetterPublisher:
    """Announces jobs parked in the failure set on a Kafka topic."""

    def __init__(self, bootstrap_servers: str, topic: str, client_id: str) -> None:
        self.topic = topic
        self.producer = Producer(
            {
                'bootstrap.servers': bootstrap_servers,
                'client.id': client_id
            }
        )

    def publish(self, job: QueueJob, error: str) -> None:
        message = {
            'job_id': job.id,
            'event_name': job.name,
            'attempts_made': job.attempts_made + 1,
            'error': error,
            'payload': job.payload
        }
        correlation_id = str(uuid.uuid4())
        self.producer.produce(
            topic=self.topic,
            key=str(job.id),
            value=json.dumps(message).encode('utf-8'),
            headers=[('correlation_id', correlation_id.encode('utf-8'))]
        )
        self.producer.poll(0)
        LOGGER.info('dead letter published job_id=%s event=%s topic=%s', job.id, job.name, self.topic)

    def flush(self, timeout: float = 5.0) -> None:
        self.producer.flush(timeout)
