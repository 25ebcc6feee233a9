from __future__ import annotations

import json
import logging
import math
import os
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger('relayer.checkpoint')


def _as_height(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or value < 0:
            return None
        return math.floor(value)
    if isinstance(value, str):
        try:
            return _as_height(float(value.strip()))
        except ValueError:
            return None
    return None


class CheckpointStore:
    """Last fully enqueued block height, kept as ``{"lastBlock": N}`` on disk."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> int:
        try:
            payload = json.loads(self.path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as exc:
            LOGGER.error('checkpoint unreadable path=%s error=%s', self.path, exc)
            return 0

        if not isinstance(payload, dict):
            return 0
        height = _as_height(payload.get('lastBlock', 0))
        return height if height is not None else 0

    def write(self, height: Any) -> None:
        value = _as_height(height) if not isinstance(height, str) else None
        if value is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f'{self.path.name}.tmp')
        tmp_path.write_text(json.dumps({'lastBlock': value}, indent=2), encoding='utf-8')
        os.replace(tmp_path, self.path)
        LOGGER.debug('checkpoint written path=%s last_block=%s', self.path, value)
