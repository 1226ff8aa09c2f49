"""
Error taxonomy for threadfix.

SourceUnavailable and NotFound abort a single PR run during research.
CycleDetected and InvalidConfiguration abort planning for a single PR.
Per-thread failures are never raised; they are recorded as Outcomes.
"""


class ThreadfixError(Exception):
    """Base class for threadfix errors."""


class SourceUnavailable(ThreadfixError):
    """The review-data source could not be reached."""


class NotFound(ThreadfixError):
    """The pull request does not exist."""


class CycleDetected(ThreadfixError):
    """Dependency annotations form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Dependency cycle: " + " -> ".join(cycle))


class InvalidConfiguration(ThreadfixError):
    """A configuration value is out of range or malformed."""
