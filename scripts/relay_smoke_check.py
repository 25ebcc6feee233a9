#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import time
import urllib.request
from datetime import datetime, timezone


def http_get(url: str) -> dict:
    req = urllib.request.Request(url=url, method='GET')
    with urllib.request.urlopen(req, timeout=8) as resp:
        return json.loads(resp.read().decode('utf-8'))


def wait_until(fn, timeout_seconds: int, interval_seconds: float, label: str):
    started = time.time()
    last_error = None
    while time.time() - started < timeout_seconds:
        try:
            result = fn()
            if result:
                return result
        except Exception as exc:  # noqa: BLE001
            last_error = exc
        time.sleep(interval_seconds)

    if last_error is not None:
        raise TimeoutError(f'{label} timed out. last_error={last_error}') from last_error
    raise TimeoutError(f'{label} timed out.')


def main() -> None:
    parser = argparse.ArgumentParser(description='Relayer readiness and queue drain check')
    parser.add_argument('--api-base', default='http://localhost:8600', help='Relayer status API base URL')
    parser.add_argument('--timeout', type=int, default=120, help='Timeout seconds')
    parser.add_argument('--drain', action='store_true', help='Also wait until no jobs are waiting or active')
    args = parser.parse_args()

    api = args.api_base.rstrip('/')

    print('[check] waiting for relayer readiness...')
    wait_until(
        fn=lambda: http_get(f'{api}/health/ready').get('status') == 'ready',
        timeout_seconds=args.timeout,
        interval_seconds=2,
        label='relayer readiness'
    )

    checkpoint = http_get(f'{api}/checkpoint')
    print(f"[check] checkpoint last_block={checkpoint['last_block']} held={checkpoint['held']}")

    if args.drain:
        def queue_drained() -> bool:
            counts = http_get(f'{api}/jobs/counts')['counts']
            return counts.get('waiting', 0) == 0 and counts.get('active', 0) == 0

        wait_until(
            fn=queue_drained,
            timeout_seconds=args.timeout,
            interval_seconds=2,
            label='queue drain'
        )
        print('[check] queue drained')

    counts = http_get(f'{api}/jobs/counts')['counts']
    failed = http_get(f'{api}/jobs/failed?limit=20').get('rows', [])

    print(
        json.dumps(
            {
                'status': 'ok' if not failed else 'degraded',
                'checked_at': datetime.now(timezone.utc).isoformat(),
                'api_base': api,
                'checkpoint': checkpoint,
                'counts': counts,
                'failed_job_ids': [row['id'] for row in failed]
            },
            indent=2
        )
    )
    if failed:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
