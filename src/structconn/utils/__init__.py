"""Console reporting and scratch workspaces."""

from .logging import ConsoleLogger, MessageType
from .workspace import discard, exclusive_workspace, get_scratch_root, workspace_name

__all__ = [
    "ConsoleLogger",
    "MessageType",
    "discard",
    "exclusive_workspace",
    "get_scratch_root",
    "workspace_name",
]
