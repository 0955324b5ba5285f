"""
errors.py
Turn-level failures raised by the catalog, the generation backends and the tool transports.
"""


class OrchestratorError(RuntimeError):
    """Base class for every failure the engine knows about."""


class CatalogUnavailable(OrchestratorError):
    """Tool listing failed. The engine recovers with an empty catalog."""


class GenerationError(OrchestratorError):
    """The text-generation backend failed. Fatal to the turn."""


class ToolTransportError(OrchestratorError):
    """The tool server could not be reached or answered with an error."""


class ToolDispatchError(OrchestratorError):
    """A tool chosen by the model could not be invoked. Fatal to the turn."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
