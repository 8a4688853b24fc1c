"""
Error taxonomy for the realtime position sync engine.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by gridsync."""


class ConnectFailure(SyncError):
    """The transport never reached the connected state for this attempt."""


class ChannelError(SyncError):
    """A runtime fault on a live channel after it was established."""


class FetchFailure(SyncError):
    """A batch fetch or grouped lookup against the backend failed."""


class FormatFailure(SyncError):
    """A single raw record could not be turned into a Position."""
