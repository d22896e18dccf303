"""Mic engine exception classes."""
from __future__ import annotations

from typing import Optional


class MicError(Exception):
    """Generic mic engine failure."""

    pass


class PolicyRejection(MicError):
    """A mic action refused locally before reaching the network."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class TransportError(MicError):
    """An attribute write could not be handed to the room transport."""

    pass


class AdminCallFailure(MicError):
    """The admin backend refused or failed an administrative call."""

    def __init__(self, reason: str, *, code: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.status_code = status_code


class ConsistencyFault(MicError):
    """Declared ``on_mic`` without a publish grant."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"{identity} is on_mic without publish permission")
        self.identity = identity
