"""
Sequence engine error taxonomy.

- NotFoundError: unknown sequence/step/lead/enrollment. Surfaced immediately, never retried.
- InvalidTransitionError: enrollment state change not allowed by the state table.
- DuplicateSendPrevented: not a failure. Signals that a (lead, step, channel) was already sent.
- TransientDispatchError: provider/network failure or timeout. Retried up to the attempt cap.
- TerminalDispatchFailure: attempt cap reached, or an unrecoverable dispatch problem.
- ConfigurationError: a channel adapter is missing credentials. Counts as a failed attempt.
"""


class SequenceEngineError(Exception):
    """Base class for all sequence engine errors."""
    pass


class NotFoundError(SequenceEngineError):
    """Raised when a sequence, step, lead or enrollment does not exist."""
    pass


class InvalidTransitionError(SequenceEngineError):
    """Raised when an enrollment cannot move from its current status to the requested one."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Enrollment cannot move from {current} to {requested}")


class DuplicateSendPrevented(SequenceEngineError):
    """A sent record already exists for this (lead, step, channel)."""
    pass


class TransientDispatchError(SequenceEngineError):
    """Dispatch failed in a way that may succeed on a later attempt."""
    pass


class TerminalDispatchFailure(SequenceEngineError):
    """Dispatch can never succeed without operator intervention."""
    pass


class ConfigurationError(SequenceEngineError):
    """A channel adapter is not configured (missing API key, URL or sender identity)."""
    pass
