"""Boot-time provisioning of a persistent storage volume."""

from volumesetup.__version__ import __version__

__all__ = ["__version__"]
