from __future__ import annotations

from typing import Optional


class FundingArbError(Exception):
    """Base class for errors raised by the funding-arb bot."""


class ConfigurationError(FundingArbError):
    """Malformed or inconsistent configuration. Fatal at startup."""


class FeedError(FundingArbError):
    """A funding fetch failed or returned unusable data for one market."""

    def __init__(self, message: str, venue: Optional[str] = None, market: Optional[str] = None) -> None:
        super().__init__(message)
        self.venue = venue
        self.market = market

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (venue={self.venue} market={self.market})"


class ExecutionError(FundingArbError):
    """The execution adapter failed to open or close a position."""

    def __init__(self, message: str, market: Optional[str] = None) -> None:
        super().__init__(message)
        self.market = market
