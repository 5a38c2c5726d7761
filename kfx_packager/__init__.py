"""KF/x packager - build and package the KF/x + Xen bundle for Linux distros.

This package orchestrates container builds of the KF/x bundle across
distribution targets, caches the expensive Xen intermediate image, and
collects the produced .deb archives into a single output directory.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
