"""
TREEPILOT error taxonomy.

Tree errors are raised while resolving or mutating a single operation and
are recovered per operation by the mutation engine. Response and generator
errors end a task in the ``error`` state.
"""

from __future__ import annotations


class TreePilotError(Exception):
    pass


# ---------------------------------------------------------------------------
# File tree
# ---------------------------------------------------------------------------

class TreeError(TreePilotError):
    """Base for failures of a single path resolution or mutation."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class PathNotFound(TreeError):
    pass


class NotAFolder(TreeError):
    pass


class InvalidDestination(TreeError):
    pass


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class MalformedResponse(TreePilotError):
    """The operations block after the separator could not be parsed."""


class GeneratorFailure(TreePilotError):
    """The generative backend failed, or its stream broke mid-response."""


class InvalidTransition(TreePilotError):
    pass


class WorkspaceError(TreePilotError):
    pass
