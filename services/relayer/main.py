from __future__ import annotations

import logging
import os

import uvicorn

from .api import create_app
from .config import get_settings
from .errors import ConfigurationError

LOGGER = logging.getLogger('relayer.main')


def main() -> None:
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    try:
        settings = get_settings()
    except ConfigurationError as exc:
        LOGGER.error('invalid configuration: %s', exc.detail)
        raise SystemExit(1) from exc

    LOGGER.info(
        'starting service=%s contracts=%s queue=%s backend=%s concurrency=%s',
        settings.service_name,
        ','.join(contract.name for contract in settings.contracts),
        settings.queue_name,
        settings.queue_backend,
        settings.worker_concurrency
    )
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=log_level.lower()
    )


if __name__ == '__main__':
    main()
