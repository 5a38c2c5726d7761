"""Target catalogue and request resolution.

This module provides:
- The built-in catalogue of supported distributions
- Loading an alternative catalogue from settings
- Expanding a target request ("all", a name, or several names)
  into concrete targets, validating the whole request up front
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import yaml
from pydantic import ValidationError

from kfx_packager.targets.io import load_targets_from_yaml
from kfx_packager.targets.schema import ALL_TARGETS, TargetSchema

if TYPE_CHECKING:
    from pathlib import Path

    from kfx_packager.config import Settings

logger = logging.getLogger(__name__)

# (name, base image) pairs for the distributions KF/x is packaged for
DEFAULT_TARGETS: tuple[tuple[str, str], ...] = (
    ("bionic", "ubuntu:bionic"),
    ("focal", "ubuntu:focal"),
    ("jammy", "ubuntu:jammy"),
    ("buster", "debian:buster"),
    ("bullseye", "debian:bullseye"),
)


class UnknownTargetError(Exception):
    """Raised when a requested target is not in the catalogue."""

    def __init__(
        self,
        names: Sequence[str],
        known: Sequence[str],
        code: str = "unknown_target",
    ) -> None:
        super().__init__(
            f"Unknown target(s): {', '.join(names)} "
            f"(known: {', '.join(known)}, or '{ALL_TARGETS}')"
        )
        self.names = list(names)
        self.known = list(known)
        self.code = code


class TargetCatalogError(Exception):
    """Raised when the configured targets file cannot be used."""

    def __init__(self, path: Path, reason: str, code: str = "invalid_targets_file") -> None:
        super().__init__(f"Invalid targets file {path}: {reason}")
        self.path = path
        self.reason = reason
        self.code = code


def default_targets(version_label: str) -> list[TargetSchema]:
    """Return the built-in target catalogue."""
    return [
        TargetSchema(name=name, base_image_ref=image, version_label=version_label)
        for name, image in DEFAULT_TARGETS
    ]


def get_known_targets(
    settings: Settings,
    version_label: str | None = None,
) -> list[TargetSchema]:
    """Return the target catalogue in effect.

    Args:
        settings: Application settings.
        version_label: Override for settings.version_label.

    Returns:
        The targets from settings.targets_file if set, else the built-ins.

    Raises:
        TargetCatalogError: If the targets file is unreadable or invalid.
    """
    version = version_label or settings.version_label
    if settings.targets_file is not None:
        logger.debug("Loading target catalogue from %s", settings.targets_file)
        try:
            targets = load_targets_from_yaml(settings.targets_file, version)
        except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
            raise TargetCatalogError(settings.targets_file, str(e)) from e
        if version_label:
            targets = [t.model_copy(update={"version_label": version_label}) for t in targets]
        return targets
    return default_targets(version)


def resolve_targets(
    requested: str | Sequence[str],
    known: Sequence[TargetSchema],
) -> list[TargetSchema]:
    """Expand a target request into concrete targets.

    Every requested name is checked before anything is returned, so an
    invalid request fails before any build starts.

    Args:
        requested: "all", a single target name, or a sequence of names.
        known: The catalogue to resolve against.

    Returns:
        Resolved targets, without duplicates, in request order
        (catalogue order for "all").

    Raises:
        UnknownTargetError: If any requested name is not in the catalogue.
        ValueError: If the request is empty.
    """
    names = [requested] if isinstance(requested, str) else list(requested)
    if not names:
        raise ValueError("No targets requested")
    by_name = {t.name: t for t in known}

    unknown = [n for n in names if n != ALL_TARGETS and n not in by_name]
    if unknown:
        raise UnknownTargetError(unknown, list(by_name))

    if ALL_TARGETS in names:
        return list(known)

    resolved: list[TargetSchema] = []
    for name in names:
        target = by_name[name]
        if target not in resolved:
            resolved.append(target)
    return resolved


__all__ = [
    "DEFAULT_TARGETS",
    "TargetCatalogError",
    "UnknownTargetError",
    "default_targets",
    "get_known_targets",
    "resolve_targets",
]
