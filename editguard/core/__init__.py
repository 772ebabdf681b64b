"""Core workspace primitives for editguard."""

from .workspace import Workspace, new_id, now_iso

__all__ = ["Workspace", "new_id", "now_iso"]
