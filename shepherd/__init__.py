"""Shepherd - local control plane shared by the operator UI and a coding agent."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "0.1.0"

__all__ = [
    "Task",
    "Feature",
    "Repository",
    "Proposal",
    "TaskStore",
    "TaskFile",
    "Workspace",
    "HttpBridge",
]
