"""Build orchestration module.

This module handles:
- Cache key computation over the tracked Xen sources
- The single-slot intermediate image cache
- Per-target container builds and the multi-target orchestrator
- Artifact normalization into one output directory
- Build records
"""

from kfx_packager.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via kfx_packager.builds.cache, etc.
