"""Error types raised by the relocation engine."""


class RelocationError(RuntimeError):
    """Base class for errors that abort an ``embed`` run."""


class PreconditionError(RelocationError):
    """Raised when an input executable or library is missing."""


class DescriptorReadError(RelocationError):
    """Raised when a binary's load commands cannot be inspected."""


class RewriteError(RelocationError):
    """Raised when a link metadata edit is rejected."""
