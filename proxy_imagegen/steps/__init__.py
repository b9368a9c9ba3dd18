"""Build steps.

The four provisioning steps, in pipeline order:
- ToolchainInstallStep: download and silently install the native toolchain
- StageArtifactStep: place the pre-built proxy binary at its fixed path
- ProvisionIdentityStep: create the runtime account and bind its group
- BindEntrypointStep: fix the image entrypoint to the staged binary
"""

from proxy_imagegen.steps.artifact import StageArtifactStep
from proxy_imagegen.steps.base import BuildStep, StepContext, StepResult
from proxy_imagegen.steps.entrypoint import BindEntrypointStep
from proxy_imagegen.steps.identity import ProvisionIdentityStep
from proxy_imagegen.steps.toolchain import ToolchainInstallStep

__all__ = [
    "BindEntrypointStep",
    "BuildStep",
    "ProvisionIdentityStep",
    "StageArtifactStep",
    "StepContext",
    "StepResult",
    "ToolchainInstallStep",
]
