from enum import Enum


class MarketDataError(Exception):
    """Base class for errors raised by the market-data core."""


class ProviderErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EMPTY = "EMPTY"
    NETWORK = "NETWORK"
    PARSE = "PARSE"


class ProviderError(MarketDataError):
    def __init__(self, source: str, kind: ProviderErrorKind, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.source = source
        self.kind = kind
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.source}:{self.kind.value}] {self.message}"


class NotFoundError(ProviderError):
    def __init__(self, source: str, message: str):
        super().__init__(source, ProviderErrorKind.NOT_FOUND, message)


class StoreWriteError(MarketDataError):
    pass


class RunSetupError(MarketDataError):
    pass


class ConcurrencyConflict(MarketDataError):
    pass


class NotificationError(MarketDataError):
    pass
