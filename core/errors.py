"""
Error types for the change-detection engine.

Only NoiseConfigError is fatal, and only while a session is starting up.
Everything else is local to a single diff pass.
"""


class PrefwatchError(Exception):
    """Base class for engine errors."""
    pass


class TransientReadFailure(PrefwatchError):
    """The backing plist could not be read during this pass."""

    def __init__(self, path, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path}: {reason}" if reason else f"Cannot read {path}")


class NoiseConfigError(PrefwatchError):
    """A noise rule set could not be loaded or parsed."""
    pass
