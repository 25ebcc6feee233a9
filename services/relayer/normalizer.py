from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .errors import LogParseError


def _hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


def _element_abi(abi: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    if abi is None:
        return None
    abi_type = str(abi.get('type', ''))
    if not abi_type.endswith(']'):
        return None
    return {**abi, 'type': abi_type[:abi_type.rindex('[')]}


def _components(abi: Mapping[str, Any] | None) -> list[Mapping[str, Any]]:
    if abi is None or str(abi.get('type', '')) != 'tuple':
        return []
    return [item for item in abi.get('components', []) if isinstance(item, Mapping)]


def normalize_value(value: Any, abi: Mapping[str, Any] | None = None) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        return format(value, 'f')
    if isinstance(value, (bytes, bytearray)):
        return _hex_prefixed(bytes(value))

    components = _components(abi)
    by_name = {str(item.get('name', '')): item for item in components}

    if isinstance(value, Mapping):
        return {
            str(key): normalize_value(item, by_name.get(str(key)))
            for key, item in value.items()
            if not str(key).isdigit()
        }
    if hasattr(value, '_asdict'):
        return normalize_value(value._asdict(), abi)

    if isinstance(value, (list, tuple)):
        names = [str(item.get('name', '')) for item in components]
        if components and len(names) == len(value) and all(names):
            return {
                name: normalize_value(item, component)
                for name, item, component in zip(names, value, components)
            }
        element = _element_abi(abi)
        return [normalize_value(item, element) for item in value]

    return str(value)


def normalize_args(inputs: tuple[Mapping[str, Any], ...], args: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for item in inputs:
        name = str(item['name'])
        if name not in args:
            raise LogParseError(f'decoded log is missing argument {name}')
        normalized[name] = normalize_value(args[name], item)
    return normalized


@dataclass(frozen=True)
class CanonicalEvent:
    event_name: str
    args: dict[str, Any]
    block_number: int
    transaction_hash: str
    log_index: int
    removed: bool
    source_contract: str
    contract_address: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def dedupe_key(self) -> tuple[str, str, int]:
        return (self.contract_address.lower(), self.transaction_hash.lower(), self.log_index)

    def to_payload(self) -> dict[str, Any]:
        return {
            'eventName': self.event_name,
            'args': dict(self.args),
            'blockNumber': self.block_number,
            'transactionHash': self.transaction_hash,
            'logIndex': self.log_index,
            'removed': self.removed,
            'sourceContract': self.source_contract,
            'contractAddress': self.contract_address
        }


def event_id(payload: Mapping[str, Any]) -> str:
    key = f"{payload.get('transactionHash')}:{payload.get('logIndex')}:{payload.get('eventName')}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def build_canonical_event(
    *,
    event_name: str,
    inputs: tuple[Mapping[str, Any], ...],
    args: Mapping[str, Any],
    log: Mapping[str, Any],
    source_contract: str
) -> CanonicalEvent:
    try:
        block_number = int(log['blockNumber'])
        log_index = int(log['logIndex'])
        transaction_hash = _hex_prefixed(log['transactionHash'])
        contract_address = str(log['address'])
    except (KeyError, TypeError, ValueError) as exc:
        raise LogParseError(f'log for {event_name} lacks position metadata: {exc}') from exc

    return CanonicalEvent(
        event_name=event_name,
        args=normalize_args(inputs, args),
        block_number=block_number,
        transaction_hash=transaction_hash,
        log_index=log_index,
        removed=bool(log.get('removed', False)),
        source_contract=source_contract,
        contract_address=contract_address
    )
