"""Artifact Stager step.

Copies the externally built proxy binary from the build context to its
fixed absolute path inside the image. The binary is staged under its
image file name in a temporary directory whose contents are copied to the
destination directory, so the engine creates missing parents.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from proxy_imagegen.errors import MissingArtifact
from proxy_imagegen.steps.base import (
    BuildStep,
    StepContext,
    StepResult,
    split_image_path,
)
from proxy_imagegen.steps.fetch import compute_file_sha256
from proxy_imagegen.types import PipelineState

logger = logging.getLogger(__name__)

ARTIFACT_MODE = 0o755


def resolve_artifact_source(context_dir: Path, source: str) -> Path:
    """Resolve the binary inside the build context.

    Args:
        context_dir: Build context directory.
        source: Path of the binary relative to the context.

    Returns:
        Resolved absolute path of the binary.

    Raises:
        MissingArtifact: If the binary is absent, not a regular file, or
            resolves outside the build context.
    """
    context_resolved = context_dir.resolve()
    candidate = (context_dir / source).resolve()

    try:
        candidate.relative_to(context_resolved)
    except ValueError:
        raise MissingArtifact(
            f"Artifact {source} resolves outside the build context {context_dir}",
            code="artifact_outside_context",
        ) from None

    if not candidate.exists():
        raise MissingArtifact(
            f"Artifact {source} not found in build context {context_dir}"
        )
    if not candidate.is_file():
        raise MissingArtifact(
            f"Artifact {source} is not a regular file",
            code="artifact_not_file",
        )
    return candidate


def stage_artifact(source: Path, staging_dir: Path, name: str) -> tuple[Path, str]:
    """Copy the binary into a staging directory under its image file name.

    Returns:
        Tuple of (staged path, SHA-256 hex digest).
    """
    staging_dir.mkdir(parents=True, exist_ok=True)
    staged = staging_dir / name
    shutil.copyfile(source, staged)
    staged.chmod(ARTIFACT_MODE)
    return staged, compute_file_sha256(staged)


class StageArtifactStep(BuildStep):
    """Place the pre-built proxy binary at its fixed image path."""

    name = "stage-artifact"
    state = PipelineState.ARTIFACT_STAGING

    def apply(self, ctx: StepContext) -> StepResult:
        artifact = ctx.definition.artifact
        source = resolve_artifact_source(ctx.context_dir, artifact.source)
        dest_dir, dest_name = split_image_path(
            ctx.definition.os_family, artifact.destination
        )

        try:
            workdir = tempfile.TemporaryDirectory(
                prefix="proxy_img_artifact_", dir=ctx.tmp_dir
            )
        except OSError as e:
            raise MissingArtifact(
                f"Cannot create a staging directory in {ctx.tmp_dir}: {e}",
                code="staging_unavailable",
            ) from e

        with workdir as tmp:
            staging_dir = Path(tmp) / "stage"
            try:
                _, checksum = stage_artifact(source, staging_dir, dest_name)
            except OSError as e:
                raise MissingArtifact(
                    f"Cannot read artifact {source}: {e}",
                    code="artifact_unreadable",
                ) from e
            logger.info(
                "Staging %s -> %s (sha256=%s)",
                source,
                artifact.destination,
                checksum[:16],
            )

            with ctx.engine.working_container(ctx.parent) as container:
                ctx.engine.copy_into(container, f"{staging_dir}/.", dest_dir)
                image_id = ctx.engine.commit(container)

        ctx.artifact_sha256 = checksum
        return StepResult(
            image_id=image_id,
            details={
                "artifact_sha256": checksum,
                "artifact_destination": artifact.destination,
            },
        )


__all__ = [
    "ARTIFACT_MODE",
    "StageArtifactStep",
    "resolve_artifact_source",
    "stage_artifact",
]
