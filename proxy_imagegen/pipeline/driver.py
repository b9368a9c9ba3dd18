"""Pipeline driver.

Sequences the build steps through the pipeline state machine:

    init -> toolchain_installing -> artifact_staging
         -> identity_provisioning -> entrypoint_binding -> done

with ``failed`` reachable from every non-terminal state. The driver is
the only component holding cross-step state: the chain of committed
layers. A step advances the pipeline only by returning a new layer; any
error moves it to ``failed``. Committed layers are left in place and the
final image is tagged only after every step succeeded. Nothing is retried.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from proxy_imagegen.errors import PipelineCancelled, PipelineError
from proxy_imagegen.steps import (
    BindEntrypointStep,
    BuildStep,
    ProvisionIdentityStep,
    StageArtifactStep,
    StepContext,
    ToolchainInstallStep,
)
from proxy_imagegen.steps.entrypoint import build_entrypoint
from proxy_imagegen.types import Entrypoint, ImageLayer, PipelineState, RuntimeIdentity

if TYPE_CHECKING:
    import httpx

    from proxy_imagegen.definitions.schema import ImageDefinitionSchema
    from proxy_imagegen.engine.runner import ContainerEngine

logger = logging.getLogger(__name__)

PUBLISH_STEP = "publish"

# Step states in their only valid order
STATE_ORDER: tuple[PipelineState, ...] = (
    PipelineState.TOOLCHAIN_INSTALLING,
    PipelineState.ARTIFACT_STAGING,
    PipelineState.IDENTITY_PROVISIONING,
    PipelineState.ENTRYPOINT_BINDING,
)

TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.INIT: frozenset(
        {PipelineState.TOOLCHAIN_INSTALLING, PipelineState.FAILED}
    ),
    PipelineState.TOOLCHAIN_INSTALLING: frozenset(
        {PipelineState.ARTIFACT_STAGING, PipelineState.FAILED}
    ),
    PipelineState.ARTIFACT_STAGING: frozenset(
        {PipelineState.IDENTITY_PROVISIONING, PipelineState.FAILED}
    ),
    PipelineState.IDENTITY_PROVISIONING: frozenset(
        {PipelineState.ENTRYPOINT_BINDING, PipelineState.FAILED}
    ),
    PipelineState.ENTRYPOINT_BINDING: frozenset(
        {PipelineState.DONE, PipelineState.FAILED}
    ),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}


def default_steps() -> list[BuildStep]:
    """Return the provisioning steps in pipeline order."""
    return [
        ToolchainInstallStep(),
        StageArtifactStep(),
        ProvisionIdentityStep(),
        BindEntrypointStep(),
    ]


def validate_step_order(steps: Sequence[BuildStep]) -> None:
    """Check steps cover the pipeline states exactly once, in order.

    Raises:
        ValueError: If the steps are missing, duplicated or out of order.
    """
    states = tuple(step.state for step in steps)
    if states != STATE_ORDER:
        raise ValueError(
            "steps must follow the pipeline order "
            f"{[s.value for s in STATE_ORDER]}, got {[s.value for s in states]}"
        )


@dataclass
class PipelineResult:
    """Outcome of a pipeline run.

    Attributes:
        state: Terminal state (done or failed).
        layers: Layers committed, in order.
        image_id: Image id of the final layer on success.
        tag: Tag applied on success.
        fingerprint: Build fingerprint, once the entrypoint was bound.
        identity: Runtime identity, once provisioned.
        entrypoint: Bound entrypoint on success.
        artifact_sha256: Digest of the staged binary, once staged.
        failed_step: Name of the step that failed.
        error: Error that failed the pipeline.
        step_details: Per-step facts keyed by step name.
    """

    state: PipelineState
    layers: tuple[ImageLayer, ...] = ()
    image_id: str | None = None
    tag: str | None = None
    fingerprint: str | None = None
    identity: RuntimeIdentity | None = None
    entrypoint: Entrypoint | None = None
    artifact_sha256: str | None = None
    failed_step: str | None = None
    error: PipelineError | None = None
    step_details: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Check if the pipeline reached done."""
        return self.state == PipelineState.DONE


class PipelineDriver:
    """Run the provisioning steps against a base image.

    Args:
        definition: Validated image definition.
        engine: Container engine that commits layers.
        context_dir: Build context holding the pre-built binary.
        steps: Steps to run (defaults to the four provisioning steps).
        cancel_event: Event checked at step boundaries.
        http_client: HTTP client for the installer download.
        step_timeout: Timeout in seconds for each engine command.
        download_timeout: Timeout in seconds for the installer download.
        tmp_dir: Directory for temporary downloads and staging.
        on_transition: Callback invoked with each new state.
    """

    def __init__(
        self,
        definition: ImageDefinitionSchema,
        engine: ContainerEngine,
        context_dir: Path,
        steps: Sequence[BuildStep] | None = None,
        cancel_event: threading.Event | None = None,
        http_client: httpx.Client | None = None,
        step_timeout: float | None = None,
        download_timeout: float | None = None,
        tmp_dir: Path | None = None,
        on_transition: Callable[[PipelineState], None] | None = None,
    ) -> None:
        self.definition = definition
        self.engine = engine
        self.steps: tuple[BuildStep, ...] = tuple(
            steps if steps is not None else default_steps()
        )
        validate_step_order(self.steps)
        self.cancel_event = cancel_event
        self.on_transition = on_transition
        self._ctx = StepContext(
            engine=engine,
            definition=definition,
            context_dir=context_dir,
            parent=definition.base_image,
            step_timeout=step_timeout,
            download_timeout=download_timeout,
            http_client=http_client,
            tmp_dir=tmp_dir,
        )
        self._state = PipelineState.INIT
        self._layers: tuple[ImageLayer, ...] = ()
        self._details: dict[str, dict[str, Any]] = {}

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def layers(self) -> tuple[ImageLayer, ...]:
        """Layers committed so far."""
        return self._layers

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid pipeline transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("Pipeline %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        if self.on_transition is not None:
            self.on_transition(new_state)

    def _result(self, **kwargs: Any) -> PipelineResult:
        return PipelineResult(
            state=self._state,
            layers=self._layers,
            identity=self._ctx.identity,
            artifact_sha256=self._ctx.artifact_sha256,
            step_details=dict(self._details),
            **kwargs,
        )

    def _fail(self, step_name: str, error: PipelineError) -> PipelineResult:
        self._transition(PipelineState.FAILED)
        logger.error(
            "Pipeline failed at %s [%s]: %s; %d layer(s) committed, image not tagged",
            step_name,
            error.code,
            error,
            len(self._layers),
        )
        fingerprint = self._details.get(BindEntrypointStep.name, {}).get("fingerprint")
        return self._result(failed_step=step_name, error=error, fingerprint=fingerprint)

    def run(self) -> PipelineResult:
        """Run every step in order, stopping at the first failure.

        Returns:
            PipelineResult in state done or failed.

        Raises:
            RuntimeError: If the driver has already run.
        """
        if self._state != PipelineState.INIT:
            raise RuntimeError("Pipeline has already run; start from a clean base")

        logger.info(
            "Building %s from %s", self.definition.image_id, self.definition.base_image
        )

        total = len(self.steps)
        for index, step in enumerate(self.steps, start=1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                return self._fail(
                    step.name, PipelineCancelled(f"Cancelled before step {step.name}")
                )

            self._transition(step.state)
            logger.info("Step %d/%d: %s", index, total, step.name)

            try:
                outcome = step.apply(self._ctx)
            except PipelineError as e:
                return self._fail(step.name, e)
            except Exception:
                self._transition(PipelineState.FAILED)
                raise

            if not outcome.image_id:
                return self._fail(
                    step.name,
                    PipelineError(
                        f"Step {step.name} did not produce a layer",
                        code="no_layer",
                    ),
                )

            layer = ImageLayer(
                step=step.name,
                image_id=outcome.image_id,
                parent_id=outcome.parent_id or self._ctx.parent,
                created_at=datetime.now(timezone.utc),
            )
            self._layers = (*self._layers, layer)
            self._details[step.name] = outcome.details
            self._ctx.parent = outcome.image_id
            logger.info("Step %s committed %s", step.name, outcome.image_id[:19])

        final_image = self._ctx.parent
        fingerprint = self._details.get(BindEntrypointStep.name, {}).get("fingerprint")

        if self.cancel_event is not None and self.cancel_event.is_set():
            return self._fail(
                PUBLISH_STEP, PipelineCancelled("Cancelled before publishing")
            )

        try:
            self.engine.tag(final_image, self.definition.tag)
        except PipelineError as e:
            return self._fail(PUBLISH_STEP, e)

        self._transition(PipelineState.DONE)
        logger.info("Built %s as %s", final_image[:19], self.definition.tag)
        return self._result(
            image_id=final_image,
            tag=self.definition.tag,
            fingerprint=fingerprint,
            entrypoint=build_entrypoint(self.definition),
        )


def run_pipeline(
    definition: ImageDefinitionSchema,
    engine: ContainerEngine,
    context_dir: Path,
    **kwargs: Any,
) -> PipelineResult:
    """Run the provisioning pipeline once.

    Step failures are returned on the result, never raised.

    Args:
        definition: Validated image definition.
        engine: Container engine.
        context_dir: Build context holding the pre-built binary.
        **kwargs: Extra PipelineDriver arguments.

    Returns:
        PipelineResult.
    """
    return PipelineDriver(definition, engine, context_dir, **kwargs).run()


__all__ = [
    "PUBLISH_STEP",
    "STATE_ORDER",
    "TRANSITIONS",
    "PipelineDriver",
    "PipelineResult",
    "default_steps",
    "run_pipeline",
    "validate_step_order",
]
