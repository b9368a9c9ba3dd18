"""Tests for image definition schema validation."""

import pytest
from pydantic import ValidationError

from proxy_imagegen.definitions.schema import (
    ImageDefinitionSchema,
    InstallerOptionsSchema,
    ServiceCheckSchema,
    ToolchainSchema,
    is_absolute_image_path,
    is_elevated_group,
)
from proxy_imagegen.types import OsFamily


class TestHelpers:
    """Test module-level helpers."""

    @pytest.mark.parametrize(
        "group", ["Administrators", "administrators", "root", "wheel", "sudo", " adm "]
    )
    def test_elevated_groups(self, group):
        """Administrative groups should be detected case-insensitively."""
        assert is_elevated_group(group)

    @pytest.mark.parametrize("group", ["Users", "proxy", "docker-users"])
    def test_unprivileged_groups(self, group):
        """Ordinary groups are not elevated."""
        assert not is_elevated_group(group)

    def test_absolute_windows_path(self):
        """Windows drive paths are absolute for Windows images."""
        assert is_absolute_image_path("C:\\proxy\\proxy.exe", OsFamily.WINDOWS)
        assert not is_absolute_image_path("proxy\\proxy.exe", OsFamily.WINDOWS)

    def test_absolute_posix_path(self):
        """POSIX paths are absolute for Linux images."""
        assert is_absolute_image_path("/usr/local/bin/proxy", OsFamily.LINUX)
        assert not is_absolute_image_path("bin/proxy", OsFamily.LINUX)


class TestImageDefinitionSchema:
    """Test ImageDefinitionSchema validation."""

    def test_valid_definition(self, definition_data):
        """A complete definition should validate with defaults filled in."""
        definition = ImageDefinitionSchema.model_validate(definition_data)

        assert definition.image_id == "proxy.windows"
        assert definition.os_family == OsFamily.WINDOWS
        assert definition.identity.user == "ProxyAdmin"
        assert definition.identity.allow_elevated_privileges is False
        assert definition.entrypoint.args == []
        assert definition.toolchain.options.quiet is True
        assert definition.toolchain.options.norestart is True

    def test_extra_fields_forbidden(self, definition_data):
        """Unknown fields should be rejected."""
        definition_data["unexpected"] = True
        with pytest.raises(ValidationError):
            ImageDefinitionSchema.model_validate(definition_data)

    def test_invalid_image_id(self, definition_data):
        """image_id with unsafe characters should be rejected."""
        definition_data["image_id"] = "proxy windows/1"
        with pytest.raises(ValidationError, match="image_id"):
            ImageDefinitionSchema.model_validate(definition_data)

    def test_relative_destination_rejected(self, definition_data):
        """The artifact destination must be absolute for the OS family."""
        definition_data["artifact"]["destination"] = "proxy\\proxy.exe"
        with pytest.raises(ValidationError, match="absolute"):
            ImageDefinitionSchema.model_validate(definition_data)

    def test_posix_destination_rejected_for_windows(self, definition_data):
        """A POSIX path is not an absolute Windows path."""
        definition_data["artifact"]["destination"] = "/proxy/proxy.exe"
        with pytest.raises(ValidationError, match="absolute"):
            ImageDefinitionSchema.model_validate(definition_data)

    def test_invalid_user_name(self, definition_data):
        """Account names with spaces should be rejected."""
        definition_data["identity"]["user"] = "Proxy Admin"
        with pytest.raises(ValidationError, match="user"):
            ImageDefinitionSchema.model_validate(definition_data)

    def test_reference_with_whitespace_rejected(self, definition_data):
        """Image references must not contain whitespace."""
        definition_data["tag"] = "proxy: 1.0"
        with pytest.raises(ValidationError, match="whitespace"):
            ImageDefinitionSchema.model_validate(definition_data)


class TestToolchainSchema:
    """Test ToolchainSchema validation."""

    def test_url_must_be_http(self):
        """Only http(s) installer URLs are accepted."""
        with pytest.raises(ValidationError, match="url"):
            ToolchainSchema(url="ftp://example.com/vs.exe", installer_name="vs.exe")

    def test_installer_name_must_be_file_name(self):
        """installer_name must not contain path separators."""
        with pytest.raises(ValidationError, match="file name"):
            ToolchainSchema(
                url="https://example.com/vs.exe", installer_name="..\\vs.exe"
            )

    def test_sha256_normalized(self):
        """Expected checksums should be lowercased."""
        toolchain = ToolchainSchema(
            url="https://example.com/vs.exe",
            installer_name="vs.exe",
            sha256="AB" * 32,
        )
        assert toolchain.sha256 == "ab" * 32

    def test_sha256_format(self):
        """Malformed checksums should be rejected."""
        with pytest.raises(ValidationError, match="sha256"):
            ToolchainSchema(
                url="https://example.com/vs.exe", installer_name="vs.exe", sha256="abc"
            )

    def test_workload_without_whitespace(self):
        """Workload ids must not contain whitespace."""
        with pytest.raises(ValidationError, match="whitespace"):
            InstallerOptionsSchema(workloads=["Microsoft VC Tools"])

    def test_service_check_requires_probe(self):
        """A service check must declare a probe command."""
        with pytest.raises(ValidationError):
            ServiceCheckSchema(probe=[])

    def test_service_check_rejects_empty_repair(self):
        """Repair commands must not be empty."""
        with pytest.raises(ValidationError, match="repair"):
            ServiceCheckSchema(probe=["sc.exe", "query", "msiserver"], repair=[[]])


class TestValidatePolicies:
    """Test privilege and base image policies."""

    def test_default_definition_passes(self, definition):
        """A pinned base and an ordinary group satisfy all policies."""
        definition.validate_policies()

    def test_elevated_group_requires_approval(self, definition_data):
        """Joining Administrators without approval is a policy violation."""
        definition_data["identity"]["group"] = "Administrators"
        definition = ImageDefinitionSchema.model_validate(definition_data)

        with pytest.raises(ValueError, match="allow_elevated_privileges"):
            definition.validate_policies()

    def test_elevated_group_with_approval(self, definition_data):
        """An approved administrative group passes the policy check."""
        definition_data["identity"]["group"] = "Administrators"
        definition_data["identity"]["allow_elevated_privileges"] = True
        definition = ImageDefinitionSchema.model_validate(definition_data)

        definition.validate_policies()
        assert definition.identity.is_elevated()

    def test_floating_base_rejected(self, definition_data):
        """A base image without a digest is rejected by default."""
        definition_data["base_image"] = "mcr.microsoft.com/windows/servercore:latest"
        definition = ImageDefinitionSchema.model_validate(definition_data)

        with pytest.raises(ValueError, match="not pinned"):
            definition.validate_policies()

    def test_floating_base_allowed_by_policy(self, definition_data):
        """policies.allow_floating_base accepts an unpinned base."""
        definition_data["base_image"] = "mcr.microsoft.com/windows/servercore:ltsc2022"
        definition_data["policies"] = {"allow_floating_base": True}
        definition = ImageDefinitionSchema.model_validate(definition_data)

        definition.validate_policies()

    def test_latest_rejected_despite_policy(self, definition_data):
        """The rolling latest tag is rejected even when floating is allowed."""
        definition_data["base_image"] = "mcr.microsoft.com/windows/servercore"
        definition_data["policies"] = {"allow_floating_base": True}
        definition = ImageDefinitionSchema.model_validate(definition_data)

        with pytest.raises(ValueError, match="latest"):
            definition.validate_policies()
