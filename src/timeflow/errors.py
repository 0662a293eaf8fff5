"""Exceptions raised by the ledger client.

Nothing here is fatal: readers keep their last snapshot, the lifecycle controller
turns every failure into one notification.
"""


class TimeflowError(Exception):
    pass


class SubmissionRejected(TimeflowError):
    """Local validation failed before anything was dispatched."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RemoteUnavailable(TimeflowError):
    """The ledger service could not be reached or did not answer usefully."""


class MalformedSnapshot(TimeflowError, ValueError):
    """A snapshot from the ledger service did not have the expected shape."""


class InvalidProjectionInput(TimeflowError, ValueError):
    """Record is missing temporal fields or ends before it starts."""
