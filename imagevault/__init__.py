"""
imagevault - persistence core for an image generation workspace.

Embedded or networked storage behind one facade, with retry, health
monitoring, conflict resolution, schema migration and encrypted secrets.
"""

from .manager import DatabaseManager

try:
    from importlib.metadata import version

    __version__ = version("imagevault")
except Exception:
    __version__ = "0.0.0"

__all__ = ["DatabaseManager"]
