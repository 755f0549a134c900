# easm/errors.py
"""
Error taxonomy for discovery orchestration.

    InvalidInput         rejected at enqueue time, surfaced to the caller
    AdapterError         one adapter attempt failed (transient / permanent / timeout)
    ConcurrencyConflict  a claim race was lost; the scheduler moves on
    StoreUnavailable     the database could not be reached or refused a write

Adapter errors never reach API callers. The scheduler folds them into the
job log and they only influence the job's terminal status.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class DiscoveryError(Exception):
    """Base class for orchestration errors."""


class InvalidInput(DiscoveryError):
    pass


class ConcurrencyConflict(DiscoveryError):
    def __init__(self, job_id: int, message: str = ""):
        super().__init__(message or f"job #{job_id} was claimed by another worker")
        self.job_id = job_id


class StoreUnavailable(DiscoveryError):
    pass


class AdapterErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"


class AdapterError(DiscoveryError):
    """
    Raised by a ToolAdapter when an attempt fails.

    ``partial`` carries whatever RawFindings were recovered before the
    failure; the scheduler merges them even though the attempt failed.
    ``output`` is captured tool stdout/stderr kept for the job log.
    """

    def __init__(
        self,
        kind: AdapterErrorKind,
        message: str,
        partial: Optional[Any] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.kind = AdapterErrorKind(kind)
        self.message = message
        self.partial = partial
        self.output = output

    @classmethod
    def transient(cls, message: str, **kwargs) -> "AdapterError":
        return cls(AdapterErrorKind.TRANSIENT, message, **kwargs)

    @classmethod
    def permanent(cls, message: str, **kwargs) -> "AdapterError":
        return cls(AdapterErrorKind.PERMANENT, message, **kwargs)

    @classmethod
    def timeout(cls, message: str, **kwargs) -> "AdapterError":
        return cls(AdapterErrorKind.TIMEOUT, message, **kwargs)

    def __repr__(self) -> str:
        return f"AdapterError({self.kind.value}, {self.message!r})"
