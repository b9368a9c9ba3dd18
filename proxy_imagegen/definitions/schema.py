"""Pydantic models for image definition validation.

An image definition declares everything the provisioning pipeline needs:
the pinned base image, the toolchain installer, the pre-built proxy binary,
the runtime identity and the entrypoint arguments. Definitions are loaded
from YAML/JSON files and validated before any build step runs.
"""

import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from proxy_imagegen.engine.reference import FLOATING_TAG, parse_reference
from proxy_imagegen.types import OsFamily

IMAGE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

# Covers both POSIX user names and Windows local account names
ACCOUNT_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]{0,31}$")

SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

# Groups whose membership grants administrative rights, compared case-insensitively
ELEVATED_GROUPS = frozenset(
    {"administrators", "root", "wheel", "sudo", "admin", "adm"}
)


def is_elevated_group(group: str) -> bool:
    """Check if a privilege group confers administrative rights."""
    return group.strip().lower() in ELEVATED_GROUPS


def is_absolute_image_path(path: str, os_family: OsFamily) -> bool:
    """Check that a path is absolute inside an image of the given OS family."""
    if os_family == OsFamily.WINDOWS:
        return PureWindowsPath(path).is_absolute()
    return PurePosixPath(path).is_absolute()


class ServiceCheckSchema(BaseModel):
    """Installer service health check.

    Attributes:
        probe: Command that exits zero when the installer service is healthy.
        repair: Commands run, in order, when the probe fails.
    """

    model_config = ConfigDict(extra="forbid")

    probe: Annotated[list[str], Field(min_length=1)]
    repair: list[list[str]] = Field(default_factory=list)

    @field_validator("repair")
    @classmethod
    def validate_repair(cls, v: list[list[str]]) -> list[list[str]]:
        """Validate repair commands are non-empty."""
        for command in v:
            if not command:
                raise ValueError("repair commands must not be empty")
        return v


class InstallerOptionsSchema(BaseModel):
    """Options passed to the toolchain installer.

    Attributes:
        quiet: Suppress the interactive UI.
        norestart: Defer any reboot the install requests.
        locale: Fix the installer message language.
        no_update_installer: Skip installer self-update.
        nocache: Do not retain the installer package cache.
        wait: Block until the installation completes.
        workloads: Toolchain components to install.
    """

    model_config = ConfigDict(extra="forbid")

    quiet: bool = True
    norestart: bool = True
    locale: str | None = "en-US"
    no_update_installer: bool = True
    nocache: bool = True
    wait: bool = True
    workloads: list[str] = Field(default_factory=list)

    @field_validator("workloads")
    @classmethod
    def validate_workloads(cls, v: list[str]) -> list[str]:
        """Validate workload ids are non-empty and free of whitespace."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("workloads must be non-empty strings")
            if any(c.isspace() for c in item):
                raise ValueError(f"workload must not contain whitespace, got '{item}'")
        return v


class ToolchainSchema(BaseModel):
    """Toolchain installer source and invocation.

    Attributes:
        url: Download URL of the installer package.
        installer_name: File name of the installer inside the image.
        sha256: Optional expected SHA-256 of the downloaded package.
        container_dir: Directory inside the image the installer is copied to.
        options: Installer options.
        service_check: Installer service health check (OS default if unset).
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="Installer download URL")
    installer_name: Annotated[str, Field(min_length=1, max_length=255)]
    sha256: str | None = Field(default=None, description="Expected SHA-256")
    container_dir: str | None = Field(
        default=None, description="Directory inside the image for the installer"
    )
    options: InstallerOptionsSchema = Field(default_factory=InstallerOptionsSchema)
    service_check: ServiceCheckSchema | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the download URL uses http(s)."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("url must be an http(s) URL")
        return v

    @field_validator("installer_name")
    @classmethod
    def validate_installer_name(cls, v: str) -> str:
        """Validate installer_name is a bare file name."""
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("installer_name must be a file name, not a path")
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Validate and normalize the expected checksum."""
        if v is None:
            return v
        if not SHA256_PATTERN.match(v):
            raise ValueError("sha256 must be 64 hex characters")
        return v.lower()


class ArtifactSchema(BaseModel):
    """Pre-built proxy binary placement.

    Attributes:
        source: Path of the binary relative to the build context.
        destination: Absolute path of the binary inside the image.
    """

    model_config = ConfigDict(extra="forbid")

    source: Annotated[str, Field(min_length=1)]
    destination: Annotated[str, Field(min_length=1)]


class IdentitySchema(BaseModel):
    """Runtime identity of the proxy process.

    Attributes:
        user: Name of the dedicated OS account.
        group: Privilege group the account joins.
        allow_elevated_privileges: Explicit approval for an administrative group.
    """

    model_config = ConfigDict(extra="forbid")

    user: str
    group: Annotated[str, Field(min_length=1, max_length=256)]
    allow_elevated_privileges: bool = False

    @field_validator("user")
    @classmethod
    def validate_user(cls, v: str) -> str:
        """Validate the account name is safe for both OS families."""
        if not ACCOUNT_NAME_PATTERN.match(v):
            raise ValueError(
                f"user must match pattern {ACCOUNT_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    def is_elevated(self) -> bool:
        """Check if the configured group grants administrative rights."""
        return is_elevated_group(self.group)


class EntrypointSchema(BaseModel):
    """Entrypoint arguments; the executable is always the staged binary."""

    model_config = ConfigDict(extra="forbid")

    args: list[str] = Field(default_factory=list)


class PoliciesSchema(BaseModel):
    """Build policies.

    Attributes:
        allow_floating_base: Accept a base image reference without a digest.
    """

    model_config = ConfigDict(extra="forbid")

    allow_floating_base: bool = False


class ImageDefinitionSchema(BaseModel):
    """Complete image definition for validation and import/export.

    Attributes:
        image_id: Unique stable identifier of the definition.
        name: Human-readable name.
        description: Optional longer description.
        tag: Repository and tag applied to the image on success.
        os_family: OS family of the base image.
        base_image: Base image reference (pinned by digest).
        toolchain: Toolchain installer settings.
        artifact: Proxy binary placement.
        identity: Runtime identity.
        entrypoint: Entrypoint arguments.
        labels: Extra image labels.
        policies: Build policies.
        notes: Optional notes/comments.
    """

    model_config = ConfigDict(extra="forbid")

    image_id: Annotated[
        str, Field(description="Unique stable identifier", min_length=1, max_length=255)
    ]
    name: Annotated[
        str, Field(description="Human-readable name", min_length=1, max_length=255)
    ]
    description: str | None = Field(default=None, description="Longer description")
    tag: Annotated[
        str, Field(description="Repository:tag published on success", min_length=1)
    ]
    os_family: OsFamily = Field(description="OS family of the base image")
    base_image: Annotated[
        str, Field(description="Base image reference", min_length=1)
    ]

    toolchain: ToolchainSchema
    artifact: ArtifactSchema
    identity: IdentitySchema
    entrypoint: EntrypointSchema = Field(default_factory=EntrypointSchema)

    labels: dict[str, str] | None = Field(default=None, description="Image labels")
    policies: PoliciesSchema | None = Field(default=None, description="Build policies")
    notes: str | None = Field(default=None, description="Notes/comments")

    @field_validator("image_id")
    @classmethod
    def validate_image_id(cls, v: str) -> str:
        """Validate image_id matches safe pattern."""
        if not IMAGE_ID_PATTERN.match(v):
            raise ValueError(
                f"image_id must match pattern {IMAGE_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("tag", "base_image")
    @classmethod
    def validate_reference(cls, v: str) -> str:
        """Validate image references contain no whitespace."""
        if any(c.isspace() for c in v):
            raise ValueError(f"image reference must not contain whitespace, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_destination(self) -> "ImageDefinitionSchema":
        """Validate the artifact destination is absolute for the OS family."""
        if not is_absolute_image_path(self.artifact.destination, self.os_family):
            raise ValueError(
                f"artifact.destination must be an absolute {self.os_family.value} "
                f"path, got '{self.artifact.destination}'"
            )
        return self

    def validate_policies(self) -> None:
        """Validate privilege and base image policies.

        An administrative privilege group must be approved explicitly with
        identity.allow_elevated_privileges, and the base image must be pinned
        by digest unless policies.allow_floating_base is set. The rolling
        latest tag is never accepted without a digest.

        Raises:
            ValueError: If a policy is violated.
        """
        if self.identity.is_elevated() and not self.identity.allow_elevated_privileges:
            raise ValueError(
                f"identity.group '{self.identity.group}' grants administrative "
                "privileges; set identity.allow_elevated_privileges=true to approve"
            )

        reference = parse_reference(self.base_image)
        if reference.is_pinned:
            return
        if reference.is_floating:
            raise ValueError(
                f"base_image '{self.base_image}' is not pinned and follows the "
                f"rolling '{FLOATING_TAG}' tag; run 'proxy-imagegen base pin'"
            )
        allow_floating = self.policies is not None and self.policies.allow_floating_base
        if not allow_floating:
            raise ValueError(
                f"base_image '{self.base_image}' is not pinned by digest; "
                "run 'proxy-imagegen base pin' or set policies.allow_floating_base=true"
            )


class DefinitionValidationResult(BaseModel):
    """Result of validating a definition file.

    Attributes:
        path: File that was validated.
        valid: Whether validation succeeded.
        errors: Validation error messages.
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    valid: bool
    errors: list[str] = Field(default_factory=list)


__all__ = [
    "ELEVATED_GROUPS",
    "ArtifactSchema",
    "DefinitionValidationResult",
    "EntrypointSchema",
    "IdentitySchema",
    "ImageDefinitionSchema",
    "InstallerOptionsSchema",
    "PoliciesSchema",
    "ServiceCheckSchema",
    "ToolchainSchema",
    "is_absolute_image_path",
    "is_elevated_group",
]
