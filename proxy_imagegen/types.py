"""Shared type definitions for proxy_imagegen.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OsFamily(str, Enum):
    """Operating system family of the base image."""

    WINDOWS = "windows"
    LINUX = "linux"


class BuildStatus(str, Enum):
    """Status of a recorded build attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(str, Enum):
    """State of the provisioning pipeline."""

    INIT = "init"
    TOOLCHAIN_INSTALLING = "toolchain_installing"
    ARTIFACT_STAGING = "artifact_staging"
    IDENTITY_PROVISIONING = "identity_provisioning"
    ENTRYPOINT_BINDING = "entrypoint_binding"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (PipelineState.DONE, PipelineState.FAILED)


@dataclass(frozen=True)
class ImageLayer:
    """Immutable snapshot produced by one successful build step.

    Attributes:
        step: Name of the step that produced the layer.
        image_id: Engine image id of the committed layer.
        parent_id: Image id (or base reference) the step started from.
        created_at: Commit time.
    """

    step: str
    image_id: str
    parent_id: str
    created_at: datetime


@dataclass(frozen=True)
class RuntimeIdentity:
    """OS principal the entrypoint process runs as."""

    user: str
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class Entrypoint:
    """Fixed process invocation of the produced image."""

    path: str
    args: tuple[str, ...] = ()

    def as_exec_form(self) -> list[str]:
        """Return the JSON exec-form command line."""
        return [self.path, *self.args]


__all__ = [
    "BuildStatus",
    "Entrypoint",
    "ImageLayer",
    "OsFamily",
    "PipelineState",
    "RuntimeIdentity",
]
