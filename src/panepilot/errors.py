"""Error kinds surfaced by the agent core."""

from __future__ import annotations


class PanePilotError(RuntimeError):
    """Base class for agent errors reported to the user."""


class CompletionServiceError(PanePilotError):
    """The completion service failed (network, provider or model error)."""


class PaneUnavailable(PanePilotError):
    """A tmux call failed or the target pane does not exist."""


class PolicyViolation(PanePilotError):
    """A command was denied or a disallowed config key was touched."""


class ConfigInvalid(PanePilotError):
    """A config file or override value could not be parsed."""


class ToolRegistryError(PanePilotError):
    """Base class for tool-server failures, reported back to the model."""

    def __init__(self, server_name: str, message: str) -> None:
        super().__init__(message)
        self.server_name = server_name


class ToolNotFound(ToolRegistryError):
    """The named server is not connected in the active set."""


class ToolTimeout(ToolRegistryError):
    """A tool listing or invocation exceeded its time bound."""


class ToolError(ToolRegistryError):
    """The remote tool server reported an error."""
