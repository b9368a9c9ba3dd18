"""Build step base class and shared step context."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import TYPE_CHECKING, Any

from proxy_imagegen.types import OsFamily, PipelineState, RuntimeIdentity

if TYPE_CHECKING:
    import httpx

    from proxy_imagegen.definitions.schema import ImageDefinitionSchema
    from proxy_imagegen.engine.runner import ContainerEngine


@dataclass
class StepContext:
    """State handed from the driver to each step.

    Attributes:
        engine: Container engine that creates and commits layers.
        definition: Validated image definition.
        context_dir: Build context holding the pre-built binary.
        parent: Image the next step starts from (base reference or layer id).
        step_timeout: Timeout in seconds for each engine command.
        download_timeout: Timeout in seconds for the installer download.
        http_client: HTTP client for the installer download.
        tmp_dir: Directory for temporary downloads and staging.
        identity: Runtime identity, once provisioned.
        artifact_sha256: Digest of the staged binary, once staged.
        installer_sha256: Digest of the downloaded installer, once fetched.
    """

    engine: ContainerEngine
    definition: ImageDefinitionSchema
    context_dir: Path
    parent: str
    step_timeout: float | None = None
    download_timeout: float | None = None
    http_client: httpx.Client | None = None
    tmp_dir: Path | None = None
    identity: RuntimeIdentity | None = None
    artifact_sha256: str | None = None
    installer_sha256: str | None = None


@dataclass
class StepResult:
    """Outcome of a successful step.

    Attributes:
        image_id: Image id of the committed layer.
        details: Step-specific facts for the build record and logs.
        parent_id: Image the layer was committed on, when the step first
            committed intermediate images of its own.
    """

    image_id: str
    details: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None


class BuildStep:
    """Ordered unit of work against the evolving image.

    Subclasses set ``name`` and ``state`` and implement apply(), which
    must return a new layer or raise a PipelineError.
    """

    name: str = ""
    state: PipelineState = PipelineState.INIT

    def apply(self, ctx: StepContext) -> StepResult:
        """Run the step against ``ctx.parent`` and return the new layer."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name='{self.name}', state='{self.state.value}')>"


def _image_path(os_family: OsFamily, path: str) -> PurePosixPath | PureWindowsPath:
    if os_family == OsFamily.WINDOWS:
        return PureWindowsPath(path)
    return PurePosixPath(path)


def join_image_path(os_family: OsFamily, directory: str, name: str) -> str:
    """Join a directory and file name using the image OS path rules."""
    return str(_image_path(os_family, directory) / name)


def split_image_path(os_family: OsFamily, path: str) -> tuple[str, str]:
    """Split an image path into (parent directory, file name)."""
    pure = _image_path(os_family, path)
    return str(pure.parent), pure.name


__all__ = [
    "BuildStep",
    "StepContext",
    "StepResult",
    "join_image_path",
    "split_image_path",
]
