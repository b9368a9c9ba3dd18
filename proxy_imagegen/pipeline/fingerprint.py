"""Build fingerprint computation.

This module handles:
- Canonical input snapshot creation from an image definition
- Deterministic hash computation over the normalized inputs

Two builds with the same fingerprint start from the same pinned base,
install the same installer package and stage the same binary with the
same identity and entrypoint. The fingerprint is written to the image as
a label and stored on the build record.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from proxy_imagegen.definitions.schema import ImageDefinitionSchema

# Schema version for fingerprint format; bump when the snapshot format changes
FINGERPRINT_SCHEMA_VERSION = "1"

FINGERPRINT_LABEL = "org.proxy-imagegen.fingerprint"
DEFINITION_LABEL = "org.proxy-imagegen.definition"


@dataclass
class FingerprintInputs:
    """Canonical representation of all inputs that shape the image.

    Attributes:
        schema_version: Version of fingerprint schema.
        definition_snapshot: Normalized definition data.
        artifact_sha256: Digest of the staged binary (or None before staging).
        installer_sha256: Digest of the installer package (or None before download).
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    definition_snapshot: dict[str, Any] = field(default_factory=dict)
    artifact_sha256: str | None = None
    installer_sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def normalize_definition_snapshot(definition: ImageDefinitionSchema) -> dict[str, Any]:
    """Create normalized definition snapshot for the fingerprint.

    Only fields that affect the produced image are included; the tag,
    name and notes are not.

    Args:
        definition: ImageDefinitionSchema instance.

    Returns:
        Dictionary with normalized definition data.
    """
    toolchain = definition.toolchain
    snapshot: dict[str, Any] = {
        "image_id": definition.image_id,
        "os_family": definition.os_family.value,
        "base_image": definition.base_image,
        "toolchain": {
            "url": toolchain.url,
            "installer_name": toolchain.installer_name,
            "container_dir": toolchain.container_dir,
            "options": toolchain.options.model_dump(mode="json"),
        },
        "artifact": {
            "source": definition.artifact.source,
            "destination": definition.artifact.destination,
        },
        "identity": {
            "user": definition.identity.user,
            "group": definition.identity.group,
        },
        "entrypoint": list(definition.entrypoint.args),
    }

    if toolchain.sha256:
        snapshot["toolchain"]["sha256"] = toolchain.sha256
    if toolchain.service_check is not None:
        snapshot["toolchain"]["service_check"] = toolchain.service_check.model_dump(
            mode="json"
        )
    if definition.labels:
        snapshot["labels"] = dict(sorted(definition.labels.items()))

    return snapshot


def compute_fingerprint(inputs: FingerprintInputs) -> str:
    """Compute a fingerprint from canonical inputs.

    Args:
        inputs: FingerprintInputs instance.

    Returns:
        Fingerprint as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_bytes = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"


def compute_fingerprint_from_definition(
    definition: ImageDefinitionSchema,
    artifact_sha256: str | None = None,
    installer_sha256: str | None = None,
) -> tuple[str, FingerprintInputs]:
    """Compute the fingerprint directly from a definition.

    Returns:
        Tuple of (fingerprint, FingerprintInputs).
    """
    inputs = FingerprintInputs(
        schema_version=FINGERPRINT_SCHEMA_VERSION,
        definition_snapshot=normalize_definition_snapshot(definition),
        artifact_sha256=artifact_sha256,
        installer_sha256=installer_sha256,
    )
    return compute_fingerprint(inputs), inputs


__all__ = [
    "DEFINITION_LABEL",
    "FINGERPRINT_LABEL",
    "FINGERPRINT_SCHEMA_VERSION",
    "FingerprintInputs",
    "compute_fingerprint",
    "compute_fingerprint_from_definition",
    "normalize_definition_snapshot",
]
