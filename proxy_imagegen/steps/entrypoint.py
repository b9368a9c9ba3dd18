"""Entrypoint Binder step.

Fixes the single command line the container runtime executes on start:
the staged proxy binary with the declared arguments, run as the
provisioned identity. Inherited default arguments are cleared so the
entrypoint is the whole invocation. Binding again replaces the previous
entrypoint; nothing is appended.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from proxy_imagegen.definitions.schema import is_absolute_image_path
from proxy_imagegen.errors import EntrypointConflict
from proxy_imagegen.pipeline.fingerprint import (
    DEFINITION_LABEL,
    FINGERPRINT_LABEL,
    compute_fingerprint_from_definition,
)
from proxy_imagegen.steps.base import BuildStep, StepContext, StepResult
from proxy_imagegen.steps.identity import user_change
from proxy_imagegen.types import Entrypoint, PipelineState, RuntimeIdentity

if TYPE_CHECKING:
    from proxy_imagegen.definitions.schema import ImageDefinitionSchema

logger = logging.getLogger(__name__)


def build_entrypoint(definition: ImageDefinitionSchema) -> Entrypoint:
    """Return the entrypoint a definition declares."""
    return Entrypoint(
        path=definition.artifact.destination,
        args=tuple(definition.entrypoint.args),
    )


def check_entrypoint(definition: ImageDefinitionSchema, entrypoint: Entrypoint) -> None:
    """Check the entrypoint launches the staged binary.

    Raises:
        EntrypointConflict: If the path is relative or not the staged binary.
    """
    if not is_absolute_image_path(entrypoint.path, definition.os_family):
        raise EntrypointConflict(
            f"Entrypoint path {entrypoint.path} is not absolute",
            code="entrypoint_not_absolute",
        )
    if entrypoint.path != definition.artifact.destination:
        raise EntrypointConflict(
            f"Entrypoint {entrypoint.path} does not launch the staged binary "
            f"{definition.artifact.destination}",
            code="entrypoint_mismatch",
        )


def label_change(key: str, value: str) -> str:
    """Return a LABEL instruction with a quoted value."""
    return f"LABEL {key}={json.dumps(value)}"


def compose_entrypoint_changes(
    entrypoint: Entrypoint,
    identity: RuntimeIdentity,
    labels: dict[str, str] | None = None,
) -> list[str]:
    """Compose the image config instructions that bind the entrypoint."""
    changes = [
        f"ENTRYPOINT {json.dumps(entrypoint.as_exec_form())}",
        "CMD []",
        user_change(identity),
    ]
    for key, value in sorted((labels or {}).items()):
        changes.append(label_change(key, value))
    return changes


class BindEntrypointStep(BuildStep):
    """Declare the staged binary as the image entrypoint."""

    name = "bind-entrypoint"
    state = PipelineState.ENTRYPOINT_BINDING

    def apply(self, ctx: StepContext) -> StepResult:
        definition = ctx.definition
        if ctx.identity is None:
            raise EntrypointConflict(
                "No runtime identity provisioned for the entrypoint",
                code="identity_missing",
            )

        entrypoint = build_entrypoint(definition)
        check_entrypoint(definition, entrypoint)

        fingerprint, _ = compute_fingerprint_from_definition(
            definition,
            artifact_sha256=ctx.artifact_sha256,
            installer_sha256=ctx.installer_sha256,
        )
        labels = dict(definition.labels or {})
        labels[DEFINITION_LABEL] = definition.image_id
        labels[FINGERPRINT_LABEL] = fingerprint

        changes = compose_entrypoint_changes(entrypoint, ctx.identity, labels)
        logger.info("Binding entrypoint %s", entrypoint.as_exec_form())

        with ctx.engine.working_container(ctx.parent) as container:
            image_id = ctx.engine.commit(container, changes)

        return StepResult(
            image_id=image_id,
            details={
                "entrypoint": entrypoint.as_exec_form(),
                "user": ctx.identity.user,
                "fingerprint": fingerprint,
            },
        )


__all__ = [
    "BindEntrypointStep",
    "build_entrypoint",
    "check_entrypoint",
    "compose_entrypoint_changes",
    "label_change",
]
