"""oasisbuild - build orchestrator for bootable Oasis Linux images."""

from .version import __version__

__all__ = ["__version__"]
