"""Identity Provisioner step.

Creates the dedicated runtime account, adds it to its privilege group and
makes it the image's default execution context. The account must not
already exist in the layer the step starts from; an existing account is
reported as IdentityCreationFailure instead of being created twice.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from proxy_imagegen.errors import GroupAssignmentFailure, IdentityCreationFailure
from proxy_imagegen.steps.base import BuildStep, StepContext, StepResult
from proxy_imagegen.types import OsFamily, PipelineState, RuntimeIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityCommands:
    """Commands that provision an account on one OS family.

    Attributes:
        probe: Exits zero when the account already exists.
        create: Creates the account.
        assign: Adds the account to the privilege group.
    """

    probe: list[str]
    create: list[str]
    assign: list[str]


def compose_identity_commands(
    os_family: OsFamily, user: str, group: str
) -> IdentityCommands:
    """Compose account provisioning commands for an OS family."""
    if os_family == OsFamily.WINDOWS:
        return IdentityCommands(
            probe=["net", "user", user],
            create=["net", "user", user, "/add"],
            assign=["net", "localgroup", group, user, "/add"],
        )
    return IdentityCommands(
        probe=["id", "-u", user],
        create=[
            "useradd",
            "--system",
            "--no-create-home",
            "--shell",
            "/usr/sbin/nologin",
            user,
        ],
        assign=["usermod", "-aG", group, user],
    )


def user_change(identity: RuntimeIdentity) -> str:
    """Return the image config instruction selecting the runtime user."""
    return f"USER {identity.user}"


class ProvisionIdentityStep(BuildStep):
    """Create the runtime account and make it the default user."""

    name = "provision-identity"
    state = PipelineState.IDENTITY_PROVISIONING

    def apply(self, ctx: StepContext) -> StepResult:
        requested = ctx.definition.identity
        commands = compose_identity_commands(
            ctx.definition.os_family, requested.user, requested.group
        )

        if requested.is_elevated():
            logger.warning(
                "Runtime identity %s joins administrative group %s; "
                "the proxy process will run with elevated privileges",
                requested.user,
                requested.group,
            )

        existing = ctx.engine.run_command(
            ctx.parent, commands.probe, timeout=ctx.step_timeout
        )
        if existing.ok:
            raise IdentityCreationFailure(
                f"User {requested.user} already exists in {ctx.parent}",
                code="identity_exists",
            )

        logger.info("Creating user %s", requested.user)
        result, image = ctx.engine.run_and_commit(
            ctx.parent, commands.create, timeout=ctx.step_timeout
        )
        if image is None:
            raise IdentityCreationFailure(
                f"{shlex.join(commands.create)} exited with code {result.exit_code}"
            )

        identity = RuntimeIdentity(user=requested.user, groups=(requested.group,))
        logger.info("Adding user %s to group %s", requested.user, requested.group)
        result, image_id = ctx.engine.run_and_commit(
            image,
            commands.assign,
            changes=[user_change(identity)],
            timeout=ctx.step_timeout,
        )
        if image_id is None:
            raise GroupAssignmentFailure(
                f"{shlex.join(commands.assign)} exited with code {result.exit_code}"
            )

        ctx.identity = identity
        return StepResult(
            image_id=image_id,
            details={
                "user": identity.user,
                "groups": list(identity.groups),
                "elevated": requested.is_elevated(),
            },
        )


__all__ = [
    "IdentityCommands",
    "ProvisionIdentityStep",
    "compose_identity_commands",
    "user_change",
]
