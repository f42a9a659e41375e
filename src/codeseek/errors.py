"""
Exception types raised by codeseek.

Only configuration and identity errors reach callers of ``index`` and
``search``; read and embed failures are absorbed per file or per chunk.
"""


class CodeseekError(Exception):
    """Base class for all codeseek errors."""


class ConfigurationError(CodeseekError, ValueError):
    """Invalid parameters (chunking, batching, limits, registrations)."""


class CollectionNotFound(CodeseekError, LookupError):
    """A codebase name is not registered."""

    def __init__(self, name: str):
        super().__init__(f'Codebase "{name}" not found')
        self.name = name


class EmbeddingUnavailable(CodeseekError, RuntimeError):
    """The embedding backend failed to initialize."""


class EmbedError(CodeseekError):
    """A single embedding call failed."""


class ReadError(CodeseekError):
    """A source file could not be read."""
