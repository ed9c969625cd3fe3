"""rcommand: Run a command or script on multiple SSH hosts at once."""

from .config import HostSpec, Settings, load_settings, resolve_hosts
from .errors import (
    Cancelled,
    ConfigError,
    ConnectFailure,
    HostError,
    PasswordRequired,
    RCommandError,
    SessionLost,
    SpawnFailure,
)
from .executor import Executor, HostDriver, HostState
from .framer import LineFramer, PromptDetector, prompt_marker
from .summary import Outcome, Summary

__version__ = "0.1.0"

__all__ = [
    "HostSpec",
    "Settings",
    "load_settings",
    "resolve_hosts",
    "Cancelled",
    "ConfigError",
    "ConnectFailure",
    "HostError",
    "PasswordRequired",
    "RCommandError",
    "SessionLost",
    "SpawnFailure",
    "Executor",
    "HostDriver",
    "HostState",
    "LineFramer",
    "PromptDetector",
    "prompt_marker",
    "Outcome",
    "Summary",
]
