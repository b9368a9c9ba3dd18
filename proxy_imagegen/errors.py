"""Error taxonomy for the provisioning pipeline.

Every error carries a stable ``code`` for structured reporting. Step
errors are never recovered locally: the driver transitions to the failed
state on the first one.
"""


class PipelineError(Exception):
    """Base error for pipeline operations."""

    default_code = "pipeline_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize PipelineError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code or self.default_code


class DefinitionError(PipelineError):
    """Raised when an image definition cannot be loaded or is invalid."""

    default_code = "invalid_definition"


class DownloadFailure(PipelineError):
    """Raised when the toolchain installer cannot be downloaded."""

    default_code = "download_failure"


class RegistrationToggleFailure(PipelineError):
    """Raised when the installer service cannot be brought to a healthy state."""

    default_code = "registration_toggle_failure"


class InstallerFailure(PipelineError):
    """Raised when the toolchain installer exits unsuccessfully."""

    default_code = "installer_failure"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


class MissingArtifact(PipelineError):
    """Raised when the proxy binary is absent from the build context."""

    default_code = "missing_artifact"


class IdentityCreationFailure(PipelineError):
    """Raised when the runtime user cannot be created (or already exists)."""

    default_code = "identity_creation_failure"


class GroupAssignmentFailure(PipelineError):
    """Raised when the runtime user cannot be added to its privilege group."""

    default_code = "group_assignment_failure"


class EntrypointConflict(PipelineError):
    """Raised when the entrypoint cannot be bound to the staged binary."""

    default_code = "entrypoint_conflict"


class StepTimeoutError(PipelineError):
    """Raised when an engine command exceeds its step timeout."""

    default_code = "step_timeout"

    def __init__(
        self,
        message: str,
        timeout: float | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.timeout = timeout


class PipelineCancelled(PipelineError):
    """Raised when cancellation is observed at a step boundary."""

    default_code = "cancelled"


class EngineUnavailable(PipelineError):
    """Raised when the container engine binary cannot be executed."""

    default_code = "engine_unavailable"


class EngineCommandError(PipelineError):
    """Raised when a container engine command exits non-zero."""

    default_code = "engine_command_error"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        command: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code
        self.command = command


__all__ = [
    "DefinitionError",
    "DownloadFailure",
    "EngineCommandError",
    "EngineUnavailable",
    "EntrypointConflict",
    "GroupAssignmentFailure",
    "IdentityCreationFailure",
    "InstallerFailure",
    "MissingArtifact",
    "PipelineCancelled",
    "PipelineError",
    "RegistrationToggleFailure",
    "StepTimeoutError",
]
