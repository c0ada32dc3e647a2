"""
Exception types and exit codes.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """
    Exit codes for the leakshield CLI.
    """

    SUCCESS = 0
    FINDINGS_FOUND = 1
    UNEXPECTED_ERROR = 128


class LeakshieldError(Exception):
    """Base class for errors raised by leakshield."""


class UpstreamProtocolError(LeakshieldError):
    """Raised when a registry returns a response we cannot interpret."""


class InvariantViolationError(LeakshieldError):
    """Raised when a poll produces data that breaks a cursor invariant."""


class StateError(LeakshieldError):
    """Raised when the checkpoint store cannot be read or written."""


class ToolError(LeakshieldError):
    """Raised when an external search or extraction tool fails."""


class IdentityCheckError(LeakshieldError):
    """Raised when a credential pair is rejected by the identity endpoint."""
