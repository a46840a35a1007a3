"""
Ancestry Exceptions
====================

Only two kinds of failure propagate out of the recovery code:
cooperative cancellation and structurally broken ``type_info`` data
that makes a whole class graph unreliable.  Ordinary negative results
("this is not a vtable", "this name is ambiguous") are ``None``.
"""

from __future__ import annotations

import threading


class AncestryError(Exception):
    """Base class for all Ancestry errors."""


class AnalysisCancelled(AncestryError):
    """Raised when a :class:`CancellationToken` is triggered mid-scan."""


class ImageLoadError(AncestryError):
    """Raised when a binary cannot be turned into a memory image."""


class MalformedTypeInfo(AncestryError):
    """A base-class descriptor does not reference a class ``type_info``.

    Attributes:
        address:    Address of the derived class ``type_info``.
        descriptor: Address of the offending descriptor field.
        reason:     Human readable explanation.
    """

    def __init__(self, address: int, descriptor: int, reason: str) -> None:
        self.address = address
        self.descriptor = descriptor
        self.reason = reason
        super().__init__(
            f"type_info at {address:#x}: descriptor at {descriptor:#x} {reason}"
        )


class CancellationToken:
    """Thread-safe cancellation flag checked by long-running scans.

    Usage::

        token = CancellationToken()
        worker = threading.Thread(target=run, args=(token,))
        ...
        token.cancel()      # run() raises AnalysisCancelled at next check
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise :class:`AnalysisCancelled` if cancellation was requested."""
        if self._event.is_set():
            raise AnalysisCancelled("analysis cancelled")
