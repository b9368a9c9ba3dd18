"""Tests for pipeline/fingerprint.py module.

Tests fingerprint computation, input normalization, and deterministic hashing.
"""

import re

from proxy_imagegen.definitions.schema import ImageDefinitionSchema
from proxy_imagegen.pipeline.fingerprint import (
    FINGERPRINT_SCHEMA_VERSION,
    FingerprintInputs,
    compute_fingerprint,
    compute_fingerprint_from_definition,
    normalize_definition_snapshot,
)

ARTIFACT_SHA = "ab" * 32
INSTALLER_SHA = "cd" * 32


def fingerprint_of(data) -> str:
    """Return the fingerprint of raw definition data."""
    definition = ImageDefinitionSchema.model_validate(data)
    fingerprint, _ = compute_fingerprint_from_definition(
        definition, artifact_sha256=ARTIFACT_SHA, installer_sha256=INSTALLER_SHA
    )
    return fingerprint


class TestNormalizeDefinitionSnapshot:
    """Tests for normalize_definition_snapshot."""

    def test_includes_image_shaping_fields(self, definition):
        """The snapshot covers base, toolchain, artifact, identity and entrypoint."""
        snapshot = normalize_definition_snapshot(definition)

        assert snapshot["base_image"] == definition.base_image
        assert snapshot["toolchain"]["url"] == definition.toolchain.url
        assert snapshot["artifact"]["destination"] == "C:\\proxy\\proxy.exe"
        assert snapshot["identity"] == {"user": "ProxyAdmin", "group": "Users"}
        assert snapshot["entrypoint"] == []

    def test_excludes_presentation_fields(self, definition):
        """Tag, name and notes do not shape the image."""
        snapshot = normalize_definition_snapshot(definition)

        assert "tag" not in snapshot
        assert "name" not in snapshot
        assert "notes" not in snapshot

    def test_optional_fields_omitted(self, definition):
        """Unset optional fields are left out."""
        snapshot = normalize_definition_snapshot(definition)

        assert "sha256" not in snapshot["toolchain"]
        assert "service_check" not in snapshot["toolchain"]
        assert "labels" not in snapshot


class TestComputeFingerprint:
    """Tests for fingerprint hashing."""

    def test_format(self, definition):
        """Fingerprints are sha256-prefixed hex digests."""
        fingerprint, inputs = compute_fingerprint_from_definition(definition)

        assert re.fullmatch(r"sha256:[0-9a-f]{64}", fingerprint)
        assert inputs.schema_version == FINGERPRINT_SCHEMA_VERSION

    def test_deterministic(self, definition_data):
        """The same inputs always give the same fingerprint."""
        assert fingerprint_of(definition_data) == fingerprint_of(definition_data)

    def test_key_order_irrelevant(self):
        """Dictionary ordering does not change the fingerprint."""
        a = FingerprintInputs(definition_snapshot={"a": 1, "b": 2})
        b = FingerprintInputs(definition_snapshot={"b": 2, "a": 1})

        assert compute_fingerprint(a) == compute_fingerprint(b)

    def test_tag_does_not_change_fingerprint(self, definition_data):
        """Retagging the same build keeps the fingerprint."""
        before = fingerprint_of(definition_data)
        definition_data["tag"] = "registry.example.com/proxy:1.0.1"
        definition_data["notes"] = "re-release"

        assert fingerprint_of(definition_data) == before

    def test_base_image_changes_fingerprint(self, definition_data):
        """A different base digest gives a different fingerprint."""
        before = fingerprint_of(definition_data)
        definition_data["base_image"] = definition_data["base_image"][:-2] + "00"

        assert fingerprint_of(definition_data) != before

    def test_group_changes_fingerprint(self, definition_data):
        """A different privilege group gives a different fingerprint."""
        before = fingerprint_of(definition_data)
        definition_data["identity"]["group"] = "Remote Desktop Users"

        assert fingerprint_of(definition_data) != before

    def test_artifact_digest_changes_fingerprint(self, definition):
        """A different binary gives a different fingerprint."""
        first, _ = compute_fingerprint_from_definition(
            definition, artifact_sha256=ARTIFACT_SHA
        )
        second, _ = compute_fingerprint_from_definition(
            definition, artifact_sha256="ef" * 32
        )

        assert first != second
