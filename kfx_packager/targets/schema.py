"""Pydantic models for distribution targets.

A Target identifies one distribution image the bundle is built for.
The catalogue schema validates YAML target files before use.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TARGET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")

# Reserved selector meaning "every known target"
ALL_TARGETS = "all"


class TargetSchema(BaseModel):
    """One distribution build target.

    Attributes:
        name: Distribution codename, unique within a run (e.g., 'jammy').
        base_image_ref: Container base image (e.g., 'ubuntu:jammy').
        version_label: Version stamped on the produced packages.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Distribution codename")
    base_image_ref: str = Field(description="Container base image reference")
    version_label: str = Field(description="Version label for produced packages")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the codename is usable as a tag and directory name."""
        if v == ALL_TARGETS:
            raise ValueError(f"'{ALL_TARGETS}' is reserved and cannot name a target")
        if not TARGET_NAME_PATTERN.match(v):
            raise ValueError(
                "name must be lowercase alphanumerics, '.', '_' or '-', "
                f"got '{v}'"
            )
        return v

    @field_validator("base_image_ref", "version_label")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @property
    def image_tag(self) -> str:
        """Tag for the final build image of this target."""
        return f"kfx-builder-{self.name}:{self.version_label}"


class TargetEntrySchema(BaseModel):
    """A target entry in a catalogue file; version_label is optional."""

    model_config = ConfigDict(extra="forbid")

    name: str
    base_image_ref: str
    version_label: str | None = None


class TargetCatalogSchema(BaseModel):
    """Schema for a YAML target catalogue file."""

    model_config = ConfigDict(extra="forbid")

    version_label: str | None = Field(
        default=None, description="Default version label for all entries"
    )
    targets: list[TargetEntrySchema] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique_names(self) -> "TargetCatalogSchema":
        seen: set[str] = set()
        for entry in self.targets:
            if entry.name in seen:
                raise ValueError(f"duplicate target name '{entry.name}'")
            seen.add(entry.name)
        return self


__all__ = [
    "ALL_TARGETS",
    "TargetCatalogSchema",
    "TargetEntrySchema",
    "TargetSchema",
]
