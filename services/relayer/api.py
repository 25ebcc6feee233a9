from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app

from .config import Settings, get_settings
from .dead_letter import DeadLetterPublisher
from .lifecycle import RelayContext
from .worker import RelayWorkerPool

logger = logging.getLogger(__name__)


def _dead_letters(settings: Settings) -> DeadLetterPublisher | None:
    if not settings.kafka_bootstrap_servers:
        return None
    return DeadLetterPublisher(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        topic=settings.dlq_topic,
        client_id=f'{settings.service_name}-dlq'
    )


def create_app(
    settings: Settings | None = None,
    context: RelayContext | None = None,
    pool: RelayWorkerPool | None = None
) -> FastAPI:
    settings = settings if settings is not None else get_settings()
    context = context if context is not None else RelayContext(settings)
    pool = pool if pool is not None else RelayWorkerPool(
        settings.downstream_base_url,
        dead_letters=_dead_letters(settings),
        poll_interval_seconds=settings.poll_interval_seconds,
        timeout_seconds=settings.http_timeout_seconds
    )

    app = FastAPI(title=settings.service_name, default_response_class=ORJSONResponse)
    app.mount('/metrics', make_asgi_app())
    app.state.context = context
    app.state.pool = pool

    @app.on_event('startup')
    async def startup() -> None:
        await pool.start(context.queue, settings.worker_concurrency)
        context.start()

    @app.on_event('shutdown')
    async def shutdown() -> None:
        await pool.stop()
        await context.cleanup()

    @app.get('/health')
    async def health() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/health/ready')
    async def ready() -> dict[str, str]:
        if context.bundle is None:
            raise HTTPException(status_code=503, detail='event listeners are not initialized')
        try:
            await context.queue.ping()
        except Exception as exc:
            logger.warning('job queue ping failed: %s', exc)
            raise HTTPException(status_code=503, detail='job queue unavailable') from exc
        return {'status': 'ready'}

    @app.get('/checkpoint')
    async def checkpoint() -> dict:
        return {
            'last_block': context.checkpoint.read(),
            'held': context.checkpoint_held
        }

    @app.get('/jobs/counts')
    async def job_counts() -> dict:
        return {'queue': context.queue.name, 'counts': await context.queue.counts()}

    @app.get('/jobs/failed')
    async def failed_jobs(limit: int = Query(default=100, ge=1, le=1000)) -> dict:
        jobs = await context.queue.failed_jobs(limit)
        return {'rows': [job.as_dict() for job in jobs]}

    @app.post('/jobs/failed/{job_id}/retry')
    async def retry_failed_job(job_id: int) -> dict:
        if not await context.queue.retry_failed(job_id):
            raise HTTPException(status_code=404, detail=f'job_id={job_id} is not in the failure set')
        logger.info('failed job requeued job_id=%s', job_id)
        return {'job_id': job_id, 'state': 'waiting'}

    return app
