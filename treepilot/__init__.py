"""
TREEPILOT — prompt-driven edits of an in-memory project tree,
with a human approving every batch before it lands.
"""

from treepilot.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
