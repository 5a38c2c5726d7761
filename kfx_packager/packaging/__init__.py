"""Archive generation for the built bundle.

This module handles:
- Debian control metadata
- Producing .deb archives from staged trees with dpkg-deb
"""

from kfx_packager.packaging.deb import DebControl, PackagingError, build_deb

__all__ = ["DebControl", "PackagingError", "build_deb"]
