"""Verification of produced images.

Reads the image config from the engine and checks it against the
definition: the entrypoint runs the staged binary with the declared
arguments, the default user is the provisioned identity, no inherited
arguments are appended, and the fingerprint label is present. An identity
in an administrative group is reported as a least-privilege finding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from proxy_imagegen.pipeline.fingerprint import DEFINITION_LABEL, FINGERPRINT_LABEL
from proxy_imagegen.steps.entrypoint import build_entrypoint

if TYPE_CHECKING:
    from proxy_imagegen.definitions.schema import ImageDefinitionSchema
    from proxy_imagegen.engine.runner import ContainerEngine

logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"

# Administrative principals an image must not default to
ADMIN_USERS = frozenset({"", "root", "0", "containeradministrator", "administrator"})


@dataclass
class Finding:
    """Single verification finding."""

    level: str
    code: str
    message: str


@dataclass
class VerificationReport:
    """Result of verifying an image.

    Attributes:
        image: Image reference that was verified.
        findings: Errors and warnings found.
    """

    image: str
    findings: list[Finding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Check if no error-level findings were reported."""
        return not any(f.level == ERROR for f in self.findings)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "image": self.image,
            "ok": self.ok,
            "findings": [
                {"level": f.level, "code": f.code, "message": f.message}
                for f in self.findings
            ],
        }


def verify_image_config(
    image: str,
    info: dict[str, Any],
    definition: ImageDefinitionSchema,
) -> VerificationReport:
    """Check an image inspect document against a definition.

    Args:
        image: Image reference (for reporting).
        info: Engine inspect document of the image.
        definition: Definition the image was built from.

    Returns:
        VerificationReport.
    """
    report = VerificationReport(image=image)
    config: dict[str, Any] = info.get("Config") or {}

    expected_entrypoint = build_entrypoint(definition).as_exec_form()
    actual_entrypoint = config.get("Entrypoint") or []
    if actual_entrypoint != expected_entrypoint:
        report.findings.append(
            Finding(
                ERROR,
                "entrypoint_mismatch",
                f"Entrypoint is {actual_entrypoint}, expected {expected_entrypoint}",
            )
        )

    if config.get("Cmd"):
        report.findings.append(
            Finding(
                ERROR,
                "inherited_cmd",
                f"Cmd {config['Cmd']} would be appended to the entrypoint",
            )
        )

    user = config.get("User") or ""
    if user != definition.identity.user:
        report.findings.append(
            Finding(
                ERROR,
                "user_mismatch",
                f"Default user is '{user}', expected '{definition.identity.user}'",
            )
        )
    if user.lower() in ADMIN_USERS:
        report.findings.append(
            Finding(
                ERROR,
                "admin_default_user",
                "Entrypoint runs as the image's administrative identity",
            )
        )

    if definition.identity.is_elevated():
        report.findings.append(
            Finding(
                WARNING,
                "elevated_identity",
                f"User '{definition.identity.user}' is a member of administrative "
                f"group '{definition.identity.group}'",
            )
        )

    labels: dict[str, str] = config.get("Labels") or {}
    if not labels.get(FINGERPRINT_LABEL):
        report.findings.append(
            Finding(ERROR, "fingerprint_missing", "Fingerprint label is missing")
        )
    if labels.get(DEFINITION_LABEL) not in (None, definition.image_id):
        report.findings.append(
            Finding(
                ERROR,
                "definition_mismatch",
                f"Image was built from definition '{labels[DEFINITION_LABEL]}'",
            )
        )

    return report


def verify_image(
    engine: ContainerEngine,
    image: str,
    definition: ImageDefinitionSchema,
) -> VerificationReport:
    """Inspect an image through the engine and verify it.

    Raises:
        EngineCommandError: If the image cannot be inspected.
    """
    info = engine.inspect_image(image)
    report = verify_image_config(image, info, definition)
    for finding in report.findings:
        log = logger.error if finding.level == ERROR else logger.warning
        log("%s: %s", finding.code, finding.message)
    return report


__all__ = [
    "Finding",
    "VerificationReport",
    "verify_image",
    "verify_image_config",
]
