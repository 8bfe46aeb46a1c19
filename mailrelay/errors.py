"""Error taxonomy for the relay pipeline.

None of these are process-fatal: a failed fetch skips the cycle, a failed
forward leaves the message eligible for the next cycle, and a store failure
degrades the current cycle only.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class FetchError(RelayError):
    """The message source could not be read (unreachable, auth failure)."""


class SendError(RelayError):
    """A single delivery attempt was rejected by the sink."""

    def __init__(self, message: str, *, rate_limited: bool = False):
        super().__init__(message)
        self.rate_limited = rate_limited


class ForwardError(RelayError):
    """Forwarding gave up; wraps the last underlying error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"failed to forward after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StoreError(RelayError):
    """The rule/ledger/audit store failed."""


class AlreadyRunningError(RelayError):
    """start() was called on a scheduler that is already running."""
