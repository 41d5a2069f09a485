"""Per-workspace preview server management."""

from .server import PreviewServerManager

__all__ = ["PreviewServerManager"]
