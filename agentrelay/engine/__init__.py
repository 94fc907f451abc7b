"""Session event engine: process relay, session registry and configuration."""
from .config import RelayConfig
from .errors import (
    InvalidSessionId,
    MalformedEntry,
    RelayError,
    SubprocessExitError,
    SubprocessSpawnError,
)

__all__ = [
    # Config
    "RelayConfig",
    # Errors
    "InvalidSessionId",
    "MalformedEntry",
    "RelayError",
    "SubprocessExitError",
    "SubprocessSpawnError",
]
