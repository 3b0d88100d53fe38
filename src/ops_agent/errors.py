"""Exception types raised inside the engine.

Only ``ConfigurationError`` is meant to reach callers. Everything else is
caught at the loop, dispatcher or workflow boundary and turned into a result
object with ``success=False``.
"""

from __future__ import annotations


class OpsAgentError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(OpsAgentError):
    """Missing credential, unsupported vendor or malformed config file."""


class ProviderCallError(OpsAgentError):
    """A call to the model vendor failed (network, auth, malformed response)."""

    def __init__(self, message: str, vendor: str = "") -> None:
        super().__init__(message)
        self.vendor = vendor


class ToolExecutionError(OpsAgentError):
    """A tool handler failed while executing."""

    def __init__(self, message: str, tool: str = "") -> None:
        super().__init__(message)
        self.tool = tool


class ParseError(OpsAgentError):
    """Model output did not match the structure the caller expected."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PluginClientError(OpsAgentError):
    """Communication with a plugin failed."""

    def __init__(self, message: str, plugin_name: str, plugin_url: str) -> None:
        super().__init__(message)
        self.plugin_name = plugin_name
        self.plugin_url = plugin_url


class PluginDiscoveryError(OpsAgentError):
    """One or more required plugins could not be discovered."""

    def __init__(self, message: str, failed_plugins: list[dict[str, str]]) -> None:
        super().__init__(message)
        self.failed_plugins = failed_plugins


class SessionVersionConflict(OpsAgentError):
    """An optimistic session update saw a newer stored version."""

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Session {session_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
