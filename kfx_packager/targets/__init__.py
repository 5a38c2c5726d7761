"""Distribution target catalogue.

This module handles:
- Target schema validation (Pydantic)
- Loading target catalogues from YAML
- Resolving "all" / named target requests
"""

from kfx_packager.targets.schema import ALL_TARGETS, TargetSchema
from kfx_packager.targets.service import (
    TargetCatalogError,
    UnknownTargetError,
    default_targets,
    get_known_targets,
    resolve_targets,
)

__all__ = [
    "ALL_TARGETS",
    "TargetCatalogError",
    "TargetSchema",
    "UnknownTargetError",
    "default_targets",
    "get_known_targets",
    "resolve_targets",
]
