from __future__ import annotations


class RelayerError(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ConfigurationError(RelayerError):
    pass


class NodeConnectionError(RelayerError):
    pass


class LogParseError(RelayerError):
    pass


class EnqueueError(RelayerError):
    pass


class RelayError(RelayerError):
    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.status_code = status_code
