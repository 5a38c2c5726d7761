"""Tests for the targets package.

Tests target schema validation, YAML catalogue loading and request
resolution.
"""

import pytest
import yaml
from pydantic import ValidationError

from kfx_packager.config import Settings
from kfx_packager.targets.io import load_targets_from_yaml, load_yaml, parse_catalog
from kfx_packager.targets.schema import TargetSchema
from kfx_packager.targets.service import (
    DEFAULT_TARGETS,
    TargetCatalogError,
    UnknownTargetError,
    default_targets,
    get_known_targets,
    resolve_targets,
)


class TestTargetSchema:
    """Tests for TargetSchema validation."""

    def test_valid(self):
        target = TargetSchema(name="jammy", base_image_ref="ubuntu:jammy", version_label="1.0")
        assert target.image_tag == "kfx-builder-jammy:1.0"

    def test_reserved_name(self):
        with pytest.raises(ValidationError):
            TargetSchema(name="all", base_image_ref="ubuntu:jammy", version_label="1")

    @pytest.mark.parametrize("name", ["Jammy", "", "-jammy", "jam my", "jammy/x"])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            TargetSchema(name=name, base_image_ref="ubuntu:jammy", version_label="1")

    def test_blank_image_rejected(self):
        with pytest.raises(ValidationError):
            TargetSchema(name="jammy", base_image_ref="  ", version_label="1")

    def test_frozen(self):
        target = TargetSchema(name="jammy", base_image_ref="ubuntu:jammy", version_label="1")
        with pytest.raises(ValidationError):
            target.name = "focal"


class TestCatalogIO:
    """Tests for YAML catalogue loading."""

    def test_parse_with_defaults(self):
        targets = parse_catalog(
            {
                "targets": [
                    {"name": "jammy", "base_image_ref": "ubuntu:jammy"},
                    {
                        "name": "bookworm",
                        "base_image_ref": "debian:bookworm",
                        "version_label": "1.0-rc1",
                    },
                ]
            },
            default_version="0.9",
        )
        assert [(t.name, t.version_label) for t in targets] == [
            ("jammy", "0.9"),
            ("bookworm", "1.0-rc1"),
        ]

    def test_catalog_version_overrides_default(self):
        targets = parse_catalog(
            {
                "version_label": "2.0",
                "targets": [{"name": "jammy", "base_image_ref": "ubuntu:jammy"}],
            },
            default_version="0.9",
        )
        assert targets[0].version_label == "2.0"

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValidationError):
            parse_catalog(
                {
                    "targets": [
                        {"name": "jammy", "base_image_ref": "ubuntu:jammy"},
                        {"name": "jammy", "base_image_ref": "ubuntu:22.04"},
                    ]
                },
                default_version="1",
            )

    def test_empty_catalog_rejected(self):
        with pytest.raises(ValidationError):
            parse_catalog({"targets": []}, default_version="1")

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_catalog(
                {"targets": [{"name": "jammy", "base_image_ref": "x", "arch": "arm64"}]},
                default_version="1",
            )

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text(
            yaml.safe_dump(
                {"targets": [{"name": "noble", "base_image_ref": "ubuntu:noble"}]}
            )
        )
        targets = load_targets_from_yaml(path, default_version="1.0")
        assert targets[0].name == "noble"

    def test_load_yaml_empty(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_load_yaml_not_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_yaml(path)


class TestKnownTargets:
    """Tests for default_targets and get_known_targets."""

    def test_default_catalogue(self):
        targets = default_targets("1.0")
        assert [t.name for t in targets] == ["bionic", "focal", "jammy", "buster", "bullseye"]
        assert {t.base_image_ref for t in targets} == {img for _, img in DEFAULT_TARGETS}

    def test_settings_version_label(self):
        targets = get_known_targets(Settings(version_label="3.1"))
        assert all(t.version_label == "3.1" for t in targets)

    def test_version_override(self):
        targets = get_known_targets(Settings(version_label="3.1"), version_label="4.0")
        assert all(t.version_label == "4.0" for t in targets)

    def test_targets_file(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text(
            "version_label: '5.0'\n"
            "targets:\n"
            "  - name: noble\n"
            "    base_image_ref: ubuntu:noble\n"
        )
        targets = get_known_targets(Settings(targets_file=path))
        assert [(t.name, t.version_label) for t in targets] == [("noble", "5.0")]

        overridden = get_known_targets(Settings(targets_file=path), version_label="6.0")
        assert overridden[0].version_label == "6.0"

    def test_invalid_targets_file(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text("targets: []\n")
        with pytest.raises(TargetCatalogError) as exc_info:
            get_known_targets(Settings(targets_file=path))
        assert exc_info.value.code == "invalid_targets_file"
        assert exc_info.value.path == path

    def test_missing_targets_file(self, tmp_path):
        with pytest.raises(TargetCatalogError):
            get_known_targets(Settings(targets_file=tmp_path / "missing.yaml"))

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text("targets: [\n")
        with pytest.raises(TargetCatalogError):
            get_known_targets(Settings(targets_file=path))


class TestResolveTargets:
    """Tests for resolve_targets function."""

    @pytest.fixture
    def known(self):
        return default_targets("1.0")

    def test_all(self, known):
        assert resolve_targets("all", known) == known

    def test_single(self, known):
        assert [t.name for t in resolve_targets("focal", known)] == ["focal"]

    def test_several_in_request_order(self, known):
        resolved = resolve_targets(["jammy", "bionic", "jammy"], known)
        assert [t.name for t in resolved] == ["jammy", "bionic"]

    def test_unknown(self, known):
        with pytest.raises(UnknownTargetError) as exc_info:
            resolve_targets("warty", known)
        assert exc_info.value.names == ["warty"]
        assert exc_info.value.code == "unknown_target"
        assert "jammy" in exc_info.value.known
        assert "warty" in str(exc_info.value)

    def test_unknown_with_all(self, known):
        with pytest.raises(UnknownTargetError):
            resolve_targets(["all", "warty"], known)

    def test_empty_request(self, known):
        with pytest.raises(ValueError):
            resolve_targets([], known)
