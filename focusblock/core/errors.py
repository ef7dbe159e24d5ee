#!/usr/bin/env python3
"""Error types raised by the blocking subsystem.

Privilege and I/O failures use the built-in ``PermissionError`` and ``OSError``.
"""


class BlockerError(Exception):
    """Base class for blocker errors"""


class ServiceUnavailable(BlockerError):
    """The OS flow filter is not configured or has not been consented to"""


class AlreadyInProgress(BlockerError):
    """An activation or deactivation is already running"""


class BackupNotFound(BlockerError):
    """A hosts backup was requested but none exists"""
