"""Provision a small VirtualBox cluster from a preseeded Debian netinst image."""

from .__version__ import __version__

__all__ = ["__version__"]
