from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.providers.persistent import WebSocketProvider

from .config import ContractConfig, EventDescriptor
from .errors import LogParseError, NodeConnectionError

LOGGER = logging.getLogger('relayer.chain')


@dataclass
class ContractBinding:
    config: ContractConfig
    contract: Any

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def address(self) -> str:
        return self.config.address

    @property
    def events(self) -> tuple[EventDescriptor, ...]:
        return self.config.events

    def decode(self, descriptor: EventDescriptor, log: Mapping[str, Any]) -> Mapping[str, Any]:
        try:
            event = getattr(self.contract.events, descriptor.name)()
            decoded = event.process_log(log)
        except Exception as exc:
            raise LogParseError(f'cannot decode {self.name}.{descriptor.name} log: {exc}') from exc
        return decoded['args']


class ChainConnection:
    """Persistent WebSocket connection to the chain node."""

    def __init__(self, wss_url: str) -> None:
        self.wss_url = wss_url
        self.web3: AsyncWeb3 | None = None

    @property
    def is_open(self) -> bool:
        return self.web3 is not None

    async def open(self) -> None:
        if self.web3 is not None:
            return
        try:
            self.web3 = await AsyncWeb3(WebSocketProvider(self.wss_url))
        except Exception as exc:
            raise NodeConnectionError(f'cannot connect to node at {self.wss_url}: {exc}') from exc
        LOGGER.info('connected to node url=%s', self.wss_url)

    async def close(self) -> None:
        if self.web3 is None:
            return
        web3, self.web3 = self.web3, None
        try:
            await web3.provider.disconnect()
        except Exception:
            LOGGER.exception('error while closing node connection')

    def _require(self) -> AsyncWeb3:
        if self.web3 is None:
            raise NodeConnectionError('node connection is not open')
        return self.web3

    def bind(self, contracts: tuple[ContractConfig, ...]) -> list[ContractBinding]:
        web3 = self._require()
        return [
            ContractBinding(
                config=item,
                contract=web3.eth.contract(address=Web3.to_checksum_address(item.address), abi=item.abi)
            )
            for item in contracts
        ]

    async def block_number(self) -> int:
        try:
            return int(await self._require().eth.block_number)
        except NodeConnectionError:
            raise
        except Exception as exc:
            raise NodeConnectionError(f'cannot read chain height: {exc}') from exc

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> list[Mapping[str, Any]]:
        logs = await self._require().eth.get_logs(
            {
                'fromBlock': from_block,
                'toBlock': to_block,
                'address': address,
                'topics': [topic]
            }
        )
        return list(logs)

    async def subscribe_logs(self, address: str, topic: str) -> str:
        try:
            return str(await self._require().eth.subscribe('logs', {'address': address, 'topics': [topic]}))
        except NodeConnectionError:
            raise
        except Exception as exc:
            raise NodeConnectionError(f'cannot subscribe to logs address={address}: {exc}') from exc

    async def unsubscribe(self, subscription_id: str) -> None:
        if self.web3 is None:
            return
        try:
            await self.web3.eth.unsubscribe(subscription_id)
        except Exception:
            LOGGER.warning('unsubscribe failed subscription_id=%s', subscription_id)

    async def notifications(self) -> AsyncIterator[tuple[str, Mapping[str, Any]]]:
        web3 = self._require()
        try:
            async for payload in web3.socket.process_subscriptions():
                subscription_id = payload.get('subscription')
                result = payload.get('result')
                if subscription_id is None or result is None:
                    continue
                yield str(subscription_id), result
        except Exception as exc:
            raise NodeConnectionError(f'log stream dropped: {exc}') from exc
