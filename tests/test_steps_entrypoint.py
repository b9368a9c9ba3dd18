"""Tests for the Entrypoint Binder step."""

import json

import pytest

from proxy_imagegen.definitions.schema import ImageDefinitionSchema
from proxy_imagegen.errors import EntrypointConflict
from proxy_imagegen.pipeline.fingerprint import DEFINITION_LABEL, FINGERPRINT_LABEL
from proxy_imagegen.steps.base import StepContext
from proxy_imagegen.steps.entrypoint import (
    BindEntrypointStep,
    build_entrypoint,
    check_entrypoint,
    compose_entrypoint_changes,
    label_change,
)
from proxy_imagegen.types import Entrypoint, RuntimeIdentity

IDENTITY = RuntimeIdentity(user="ProxyAdmin", groups=("Users",))


def make_context(engine, definition, context_dir, identity=IDENTITY) -> StepContext:
    """Return a step context with a provisioned identity."""
    return StepContext(
        engine=engine,
        definition=definition,
        context_dir=context_dir,
        parent=definition.base_image,
        identity=identity,
        artifact_sha256="ab" * 32,
        installer_sha256="cd" * 32,
    )


class TestEntrypointHelpers:
    """Tests for entrypoint helpers."""

    def test_build_entrypoint(self, definition, linux_definition):
        """The entrypoint launches the staged binary with the declared args."""
        assert build_entrypoint(definition) == Entrypoint(path="C:\\proxy\\proxy.exe")
        assert build_entrypoint(linux_definition).as_exec_form() == [
            "/usr/local/bin/proxy",
            "--config",
            "/etc/proxy/proxy.toml",
        ]

    def test_check_rejects_relative_path(self, definition):
        """A relative entrypoint path is a conflict."""
        with pytest.raises(EntrypointConflict) as exc_info:
            check_entrypoint(definition, Entrypoint(path="proxy.exe"))
        assert exc_info.value.code == "entrypoint_not_absolute"

    def test_check_rejects_other_binary(self, definition):
        """An entrypoint that is not the staged binary is a conflict."""
        with pytest.raises(EntrypointConflict) as exc_info:
            check_entrypoint(definition, Entrypoint(path="C:\\Windows\\cmd.exe"))
        assert exc_info.value.code == "entrypoint_mismatch"

    def test_label_change_quotes_value(self):
        """Label values are JSON-quoted."""
        assert label_change("a.b", "x y") == 'LABEL a.b="x y"'

    def test_changes_clear_cmd(self):
        """Changes set the entrypoint, clear CMD and select the user."""
        changes = compose_entrypoint_changes(
            Entrypoint(path="C:\\proxy\\proxy.exe"), IDENTITY, {"b": "2", "a": "1"}
        )

        assert changes[0] == "ENTRYPOINT " + json.dumps(["C:\\proxy\\proxy.exe"])
        assert changes[1] == "CMD []"
        assert changes[2] == "USER ProxyAdmin"
        assert changes[3:] == ['LABEL a="1"', 'LABEL b="2"']


class TestBindEntrypointStep:
    """Tests for the full entrypoint step."""

    def test_binds_entrypoint(self, fake_engine, definition, context_dir):
        """The committed image runs proxy.exe as ProxyAdmin with no arguments."""
        ctx = make_context(fake_engine, definition, context_dir)

        result = BindEntrypointStep().apply(ctx)

        config = fake_engine.images[result.image_id].config
        assert config["Entrypoint"] == ["C:\\proxy\\proxy.exe"]
        assert config["Cmd"] == []
        assert config["User"] == "ProxyAdmin"
        assert config["Labels"][DEFINITION_LABEL] == "proxy.windows"
        assert config["Labels"][FINGERPRINT_LABEL] == result.details["fingerprint"]
        assert result.details["fingerprint"].startswith("sha256:")

    def test_rebinding_replaces(self, fake_engine, definition, context_dir):
        """Binding twice replaces the entrypoint instead of appending."""
        first = BindEntrypointStep().apply(
            make_context(fake_engine, definition, context_dir)
        )
        ctx = make_context(fake_engine, definition, context_dir)
        ctx.parent = first.image_id

        second = BindEntrypointStep().apply(ctx)

        config = fake_engine.images[second.image_id].config
        assert config["Entrypoint"] == ["C:\\proxy\\proxy.exe"]
        assert config["Cmd"] == []

    def test_custom_labels(self, fake_engine, definition_data, context_dir):
        """Definition labels are applied alongside the build labels."""
        definition_data["labels"] = {"org.opencontainers.image.vendor": "Example"}
        definition = ImageDefinitionSchema.model_validate(definition_data)

        result = BindEntrypointStep().apply(
            make_context(fake_engine, definition, context_dir)
        )

        labels = fake_engine.images[result.image_id].config["Labels"]
        assert labels["org.opencontainers.image.vendor"] == "Example"

    def test_requires_identity(self, fake_engine, definition, context_dir):
        """Without a provisioned identity the binding is a conflict."""
        ctx = make_context(fake_engine, definition, context_dir, identity=None)

        with pytest.raises(EntrypointConflict) as exc_info:
            BindEntrypointStep().apply(ctx)

        assert exc_info.value.code == "identity_missing"
        assert fake_engine.calls == []
