"""Container engine runner.

This module handles:
- Composing container engine CLI invocations (docker or podman)
- Executing them with subprocess under a per-step timeout
- Capturing every command and its output to the build log file
- Running a command in a throwaway working container and committing it

Each committed container becomes a new image id; the pipeline driver
treats that image id as the layer produced by a build step.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from proxy_imagegen.errors import (
    EngineCommandError,
    EngineUnavailable,
    StepTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Result of a command run inside a working container.

    Attributes:
        exit_code: Exit code of the container process.
        output: Combined stdout/stderr of the process.
    """

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        """Check if the process exited zero."""
        return self.exit_code == 0


class ContainerEngine:
    """Thin wrapper around a container engine CLI.

    Args:
        binary: Engine executable (``docker`` or ``podman``).
        log_path: Optional file every command and its output is appended to.
        timeout: Default timeout in seconds for each command (None = no timeout).
    """

    def __init__(
        self,
        binary: str = "docker",
        log_path: Path | None = None,
        timeout: float | None = None,
    ) -> None:
        self.binary = binary
        self.log_path = log_path
        self.timeout = timeout

    def _append_log(
        self,
        cmd_str: str,
        exit_code: int | None,
        stdout: str | None,
        stderr: str | None,
    ) -> None:
        """Append a command and its output to the build log."""
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Time: {datetime.now(timezone.utc).isoformat()}\n")
            if stdout:
                log_file.write(stdout if stdout.endswith("\n") else stdout + "\n")
            if stderr:
                log_file.write(stderr if stderr.endswith("\n") else stderr + "\n")
            status = "TIMEOUT" if exit_code is None else str(exit_code)
            log_file.write(f"# Exit code: {status}\n\n")

    def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute an engine command.

        Args:
            args: Arguments following the engine binary.
            timeout: Timeout in seconds; falls back to the engine default.
            check: Raise EngineCommandError on non-zero exit.

        Returns:
            Completed process with captured text output.

        Raises:
            StepTimeoutError: If the command times out.
            EngineUnavailable: If the engine binary cannot be executed.
            EngineCommandError: If check is set and the command fails.
        """
        cmd = [self.binary, *args]
        cmd_str = shlex.join(cmd)
        effective_timeout = timeout if timeout is not None else self.timeout
        logger.debug("Executing: %s", cmd_str)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            self._append_log(cmd_str, None, None, None)
            message = f"{cmd_str} timed out after {effective_timeout} seconds"
            logger.error(message)
            raise StepTimeoutError(message, timeout=effective_timeout) from e
        except OSError as e:
            message = f"Failed to execute {self.binary}: {e}"
            logger.error(message)
            raise EngineUnavailable(message) from e

        self._append_log(cmd_str, result.returncode, result.stdout, result.stderr)

        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise EngineCommandError(
                f"{cmd_str} failed with exit code {result.returncode}: {detail}",
                exit_code=result.returncode,
                command=cmd_str,
            )
        return result

    def create(self, image: str, command: list[str] | None = None) -> str:
        """Create (but do not start) a working container.

        Returns:
            Container id.
        """
        args = ["create", image]
        if command:
            args.extend(command)
        return self._run(args).stdout.strip()

    def start(self, container: str, timeout: float | None = None) -> ExecResult:
        """Start a created container and wait for its process to exit."""
        result = self._run(["start", "--attach", container], timeout=timeout, check=False)
        return ExecResult(
            exit_code=result.returncode,
            output=(result.stdout or "") + (result.stderr or ""),
        )

    def copy_into(self, container: str, source: str | Path, destination: str) -> None:
        """Copy a host file or directory into a container."""
        self._run(["cp", str(source), f"{container}:{destination}"])

    def commit(self, container: str, changes: list[str] | None = None) -> str:
        """Commit a container to a new image.

        Args:
            container: Container id.
            changes: Image config instructions (``USER x``, ``ENTRYPOINT [...]``).

        Returns:
            New image id.
        """
        args = ["commit"]
        for change in changes or []:
            args.extend(["--change", change])
        args.append(container)
        return self._run(args).stdout.strip()

    def remove(self, container: str) -> None:
        """Force-remove a container; failures are logged, not raised."""
        result = self._run(["rm", "--force", container], check=False)
        if result.returncode != 0:
            logger.warning(
                "Failed to remove container %s: %s", container, result.stderr.strip()
            )

    def tag(self, image: str, tag: str) -> None:
        """Apply a repository:tag to an image."""
        self._run(["tag", image, tag])

    def pull(self, reference: str) -> None:
        """Pull an image reference from its registry."""
        self._run(["pull", reference])

    def inspect_image(self, image: str) -> dict[str, Any]:
        """Return the engine's inspect document for an image.

        Raises:
            EngineCommandError: If the image does not exist or output is invalid.
        """
        result = self._run(["image", "inspect", image])
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise EngineCommandError(
                f"Invalid inspect output for {image}: {e}",
                code="invalid_inspect_output",
            ) from e
        if not isinstance(data, list) or not data:
            raise EngineCommandError(
                f"Empty inspect output for {image}",
                code="invalid_inspect_output",
            )
        info: dict[str, Any] = data[0]
        return info

    def image_exists(self, image: str) -> bool:
        """Check whether the engine knows an image."""
        return self._run(["image", "inspect", image], check=False).returncode == 0

    @contextmanager
    def working_container(
        self, image: str, command: list[str] | None = None
    ) -> Iterator[str]:
        """Create a working container from an image and always remove it.

        Yields:
            Container id.
        """
        container = self.create(image, command)
        try:
            yield container
        finally:
            self.remove(container)

    def run_command(
        self,
        image: str,
        command: list[str],
        timeout: float | None = None,
    ) -> ExecResult:
        """Run a command in a throwaway container without committing."""
        with self.working_container(image, command) as container:
            return self.start(container, timeout=timeout)

    def run_and_commit(
        self,
        image: str,
        command: list[str],
        changes: list[str] | None = None,
        timeout: float | None = None,
    ) -> tuple[ExecResult, str | None]:
        """Run a command in a working container and commit it on success.

        Returns:
            Tuple of (ExecResult, new image id or None when the command failed).
        """
        with self.working_container(image, command) as container:
            result = self.start(container, timeout=timeout)
            if not result.ok:
                return result, None
            return result, self.commit(container, changes)


__all__ = ["ContainerEngine", "ExecResult"]
