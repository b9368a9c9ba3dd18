"""Toolchain Installer step.

Downloads the native toolchain installer on the host, makes sure the
image's installer service is healthy, copies the installer into a working
container and runs it silently with the declared options. The committed
container is the toolchain layer.

A partially applied install is never repaired: any failure aborts the
pipeline and the build must be re-run from a clean base image.
"""

from __future__ import annotations

import logging
import shlex
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from proxy_imagegen.definitions.schema import (
    InstallerOptionsSchema,
    ServiceCheckSchema,
)
from proxy_imagegen.errors import (
    DownloadFailure,
    InstallerFailure,
    RegistrationToggleFailure,
)
from proxy_imagegen.steps.base import (
    BuildStep,
    StepContext,
    StepResult,
    join_image_path,
)
from proxy_imagegen.steps.fetch import DOWNLOAD_TIMEOUT, download_file
from proxy_imagegen.types import OsFamily, PipelineState

if TYPE_CHECKING:
    from proxy_imagegen.definitions.schema import ImageDefinitionSchema
    from proxy_imagegen.engine.runner import ContainerEngine

logger = logging.getLogger(__name__)

# Installer exit code meaning "succeeded, reboot required"
REBOOT_REQUIRED_EXIT_CODE = 3010

DEFAULT_CONTAINER_DIRS = {
    OsFamily.WINDOWS: "C:\\TEMP",
    OsFamily.LINUX: "/tmp/toolchain",
}

# Query the Windows Installer service; re-register it when the query fails
WINDOWS_SERVICE_CHECK = ServiceCheckSchema(
    probe=["sc.exe", "query", "msiserver"],
    repair=[["msiexec", "/unregister"], ["msiexec", "/regserver"]],
)


def compose_installer_args(options: InstallerOptionsSchema) -> list[str]:
    """Compose installer flags from the declared options.

    Args:
        options: Installer options.

    Returns:
        List of command-line flags.
    """
    args: list[str] = []
    if options.quiet:
        args.append("--quiet")
    if options.wait:
        args.append("--wait")
    if options.norestart:
        args.append("--norestart")
    if options.nocache:
        args.append("--nocache")
    if options.locale:
        args.extend(["--locale", options.locale])
    if options.no_update_installer:
        args.append("--noUpdateInstaller")
    for workload in options.workloads:
        args.extend(["--add", workload])
    return args


def compose_installer_command(
    installer_path: str, options: InstallerOptionsSchema
) -> list[str]:
    """Compose the full installer command line run inside the container."""
    return [installer_path, *compose_installer_args(options)]


def installer_container_dir(definition: ImageDefinitionSchema) -> str:
    """Return the directory inside the image the installer is copied to."""
    return definition.toolchain.container_dir or DEFAULT_CONTAINER_DIRS[
        definition.os_family
    ]


def resolve_service_check(
    definition: ImageDefinitionSchema,
) -> ServiceCheckSchema | None:
    """Return the installer service check for a definition.

    An explicit check wins; Windows images fall back to the Windows
    Installer service check; Linux images have none.
    """
    if definition.toolchain.service_check is not None:
        return definition.toolchain.service_check
    if definition.os_family == OsFamily.WINDOWS:
        return WINDOWS_SERVICE_CHECK
    return None


def is_install_success(exit_code: int, options: InstallerOptionsSchema) -> bool:
    """Check whether an installer exit code counts as success."""
    if exit_code == 0:
        return True
    return options.norestart and exit_code == REBOOT_REQUIRED_EXIT_CODE


def ensure_installer_service(
    engine: ContainerEngine,
    image: str,
    check: ServiceCheckSchema,
    timeout: float | None = None,
) -> str:
    """Make sure the installer service in an image is healthy.

    The probe runs first; a healthy service is left untouched. Otherwise
    the repair commands run in order, each committed on top of the last,
    and the probe must then succeed.

    Args:
        engine: Container engine.
        image: Image to check.
        check: Probe and repair commands.
        timeout: Per-command timeout in seconds.

    Returns:
        Image id to continue from (unchanged when already healthy).

    Raises:
        RegistrationToggleFailure: If a repair command fails or the service
            is still unhealthy afterwards.
    """
    probe = engine.run_command(image, check.probe, timeout=timeout)
    if probe.ok:
        logger.info("Installer service healthy in %s", image)
        return image

    logger.warning(
        "Installer service probe %s exited %d; re-registering",
        shlex.join(check.probe),
        probe.exit_code,
    )

    current = image
    for command in check.repair:
        result, new_image = engine.run_and_commit(current, command, timeout=timeout)
        if new_image is None:
            raise RegistrationToggleFailure(
                f"{shlex.join(command)} exited with code {result.exit_code}",
                code="service_repair_failed",
            )
        current = new_image

    recheck = engine.run_command(current, check.probe, timeout=timeout)
    if not recheck.ok:
        raise RegistrationToggleFailure(
            f"Installer service still unhealthy after repair "
            f"({shlex.join(check.probe)} exited {recheck.exit_code})",
            code="service_unhealthy",
        )

    logger.info("Installer service re-registered in %s", current)
    return current


class ToolchainInstallStep(BuildStep):
    """Download and silently install the native toolchain."""

    name = "install-toolchain"
    state = PipelineState.TOOLCHAIN_INSTALLING

    def apply(self, ctx: StepContext) -> StepResult:
        toolchain = ctx.definition.toolchain
        try:
            workdir = tempfile.TemporaryDirectory(
                prefix="proxy_img_toolchain_", dir=ctx.tmp_dir
            )
        except OSError as e:
            raise DownloadFailure(
                f"Cannot create a download directory in {ctx.tmp_dir}: {e}",
                code="tmp_dir_unavailable",
            ) from e

        owns_client = ctx.http_client is None
        client = ctx.http_client or httpx.Client(follow_redirects=True)

        try:
            with workdir as tmp:
                payload_dir = Path(tmp) / "payload"
                download = download_file(
                    client,
                    toolchain.url,
                    payload_dir / toolchain.installer_name,
                    expected_checksum=toolchain.sha256,
                    timeout=ctx.download_timeout or DOWNLOAD_TIMEOUT,
                )
                download.path.chmod(0o755)
                ctx.installer_sha256 = download.checksum

                image = ctx.parent
                check = resolve_service_check(ctx.definition)
                if check is not None:
                    image = ensure_installer_service(
                        ctx.engine, image, check, timeout=ctx.step_timeout
                    )

                container_dir = installer_container_dir(ctx.definition)
                installer_path = join_image_path(
                    ctx.definition.os_family, container_dir, toolchain.installer_name
                )
                command = compose_installer_command(installer_path, toolchain.options)
                logger.info("Running installer: %s", shlex.join(command))

                with ctx.engine.working_container(image, command) as container:
                    ctx.engine.copy_into(container, f"{payload_dir}/.", container_dir)
                    result = ctx.engine.start(container, timeout=ctx.step_timeout)
                    if not is_install_success(result.exit_code, toolchain.options):
                        raise InstallerFailure(
                            f"Installer {toolchain.installer_name} exited with "
                            f"code {result.exit_code}",
                            exit_code=result.exit_code,
                        )
                    if result.exit_code == REBOOT_REQUIRED_EXIT_CODE:
                        logger.info("Installer requested a reboot; deferred")
                    image_id = ctx.engine.commit(container)
        finally:
            if owns_client:
                client.close()

        details = {
            "installer_sha256": download.checksum,
            "installer_size_bytes": download.size_bytes,
            "installer_exit_code": result.exit_code,
        }
        if image != ctx.parent:
            details["repaired_from"] = ctx.parent
        return StepResult(image_id=image_id, details=details, parent_id=image)


__all__ = [
    "REBOOT_REQUIRED_EXIT_CODE",
    "WINDOWS_SERVICE_CHECK",
    "ToolchainInstallStep",
    "compose_installer_args",
    "compose_installer_command",
    "ensure_installer_service",
    "installer_container_dir",
    "is_install_success",
    "resolve_service_check",
]
