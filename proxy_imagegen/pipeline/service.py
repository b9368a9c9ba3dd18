"""Build service module.

This module provides the high-level build API:
- build_image(): run the pipeline for a definition and record the attempt
- Locking to prevent concurrent builds of the same definition
- Build record and layer persistence
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from proxy_imagegen.config import get_settings
from proxy_imagegen.definitions.io import definition_to_dict
from proxy_imagegen.engine.runner import ContainerEngine
from proxy_imagegen.pipeline.driver import PipelineDriver, PipelineResult
from proxy_imagegen.pipeline.models import BuildRecord, LayerRecord
from proxy_imagegen.types import BuildStatus, PipelineState

if TYPE_CHECKING:
    from proxy_imagegen.config import Settings
    from proxy_imagegen.definitions.schema import ImageDefinitionSchema

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class BuildServiceError(Exception):
    """Base error for build service operations."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


@contextmanager
def build_lock(
    lock_dir: Path,
    image_id: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a definition.

    Uses a file-based lock so one host never runs two builds of the same
    definition at once.

    Args:
        lock_dir: Directory for lock files.
        image_id: Definition identifier to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"build_{image_id}.lock"

    logger.debug("Acquiring build lock for %s", image_id)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {image_id}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for %s", image_id)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for %s", image_id)
        os.close(fd)


def _persist_layers(build: BuildRecord, result: PipelineResult) -> None:
    """Store the layers a pipeline run committed."""
    for position, layer in enumerate(result.layers):
        build.layers.append(
            LayerRecord(
                position=position,
                step=layer.step,
                image_id=layer.image_id,
                parent_id=layer.parent_id,
                created_at=layer.created_at.replace(tzinfo=None),
                details=result.step_details.get(layer.step),
            )
        )


def build_image(
    session: Session,
    definition: ImageDefinitionSchema,
    context_dir: Path,
    settings: Settings | None = None,
    engine: ContainerEngine | None = None,
    cancel_event: threading.Event | None = None,
    http_client: httpx.Client | None = None,
) -> tuple[BuildRecord, PipelineResult]:
    """Build an image from a definition and record the attempt.

    This is the main entry point for the build pipeline. It:
    1. Checks the definition policies and the build context
    2. Acquires the per-definition build lock
    3. Creates a BuildRecord and a per-build engine log
    4. Runs the pipeline driver
    5. Persists committed layers and the outcome

    A failed pipeline is recorded and returned, not raised.

    Args:
        session: Database session.
        definition: Image definition.
        context_dir: Build context holding the pre-built binary.
        settings: Application settings.
        engine: Container engine (created from settings if not provided).
        cancel_event: Event checked at step boundaries.
        http_client: HTTP client for the installer download.

    Returns:
        Tuple of (BuildRecord, PipelineResult).

    Raises:
        BuildServiceError: If the definition or build context is invalid, or
            the pipeline finished without a tagged image.
        TimeoutError: If the build lock cannot be acquired.
    """
    if settings is None:
        settings = get_settings()

    try:
        definition.validate_policies()
    except ValueError as e:
        raise BuildServiceError(str(e), code="policy_violation") from e

    if not context_dir.is_dir():
        raise BuildServiceError(
            f"Build context is not a directory: {context_dir}",
            code="invalid_context",
        )

    if settings.tmp_dir is not None:
        try:
            settings.tmp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildServiceError(
                f"Cannot create temporary directory {settings.tmp_dir}: {e}",
                code="tmp_dir_unavailable",
            ) from e

    lock_dir = settings.work_dir / ".locks"

    with build_lock(lock_dir, definition.image_id, timeout=settings.lock_timeout):
        build = BuildRecord(
            image_id=definition.image_id,
            definition_snapshot=definition_to_dict(definition),
            status=BuildStatus.PENDING.value,
            state=PipelineState.INIT.value,
        )
        session.add(build)
        session.flush()
        logger.info("Created build record %d for %s", build.id, definition.image_id)

        log_path = (
            settings.log_dir
            / definition.image_id
            / f"{build.id:08d}_{uuid.uuid4().hex[:8]}.log"
        )
        build.log_path = str(log_path)

        if engine is None:
            engine = ContainerEngine(
                binary=settings.engine,
                log_path=log_path,
                timeout=settings.step_timeout,
            )
        elif engine.log_path is None:
            engine.log_path = log_path

        def record_state(state: PipelineState) -> None:
            build.state = state.value

        build.mark_running()
        session.flush()

        driver = PipelineDriver(
            definition,
            engine,
            context_dir,
            cancel_event=cancel_event,
            http_client=http_client,
            step_timeout=settings.step_timeout,
            download_timeout=settings.download_timeout,
            tmp_dir=settings.tmp_dir,
            on_transition=record_state,
        )
        try:
            result = driver.run()
        except Exception as e:
            build.mark_failed(
                error_type="internal_error",
                message=str(e),
                failed_step=driver.state.value,
            )
            session.flush()
            raise

        _persist_layers(build, result)
        build.fingerprint = result.fingerprint

        if result.success and (result.image_id is None or result.tag is None):
            build.mark_failed(
                error_type="no_final_image",
                message="Pipeline finished without a tagged image",
                failed_step=result.failed_step,
            )
            session.flush()
            raise BuildServiceError(
                f"Build {build.id} finished without a tagged image",
                code="no_final_image",
            )

        if result.success:
            build.mark_succeeded(result.image_id, result.tag)
            logger.info(
                "Build %d succeeded: %s tagged %s",
                build.id,
                result.image_id[:19],
                result.tag,
            )
        else:
            build.mark_failed(
                error_type=result.error.code if result.error else None,
                message=str(result.error) if result.error else None,
                failed_step=result.failed_step,
            )
            logger.error(
                "Build %d failed at %s: %s", build.id, result.failed_step, result.error
            )
        session.flush()

        return build, result


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    image_id: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        image_id: Filter by definition identifier.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if image_id is not None:
        stmt = stmt.where(BuildRecord.image_id == image_id)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_layers(session: Session, build_id: int) -> list[LayerRecord]:
    """Get the layers a build committed, in pipeline order.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.layers)


__all__ = [
    "BuildNotFoundError",
    "BuildServiceError",
    "build_image",
    "build_lock",
    "get_build",
    "get_build_layers",
    "list_builds",
]
