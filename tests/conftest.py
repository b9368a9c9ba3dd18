"""Shared fixtures for proxy_imagegen tests.

The fake container engine keeps images and working containers in memory
and interprets the handful of programs the pipeline runs (installer,
service probe and repair, account management) so whole pipelines can run
without docker or podman.
"""

import copy
import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx

from proxy_imagegen.definitions.schema import ImageDefinitionSchema
from proxy_imagegen.engine.runner import ContainerEngine
from proxy_imagegen.errors import EngineCommandError

BASE_DIGEST = "sha256:" + "ab" * 32
WINDOWS_BASE = f"mcr.microsoft.com/windows/servercore:ltsc2022@{BASE_DIGEST}"
LINUX_BASE = f"docker.io/library/debian:bookworm-slim@{BASE_DIGEST}"
INSTALLER_URL = "https://aka.example.com/vs/17/release/vs_buildtools.exe"
INSTALLER_BYTES = b"MZ fake toolchain installer"
ARTIFACT_BYTES = b"MZ pre-built proxy binary"


@dataclass
class FakeImage:
    """In-memory image (or working container) filesystem and config."""

    files: dict[str, bytes] = field(default_factory=dict)
    users: dict[str, set[str]] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    service_healthy: bool = True
    toolchain_installed: bool = False
    repo_digests: list[str] = field(default_factory=list)


def _program(command: list[str]) -> str:
    name = command[0].replace("\\", "/").rsplit("/", 1)[-1]
    return name.lower()


def _join(directory: str, name: str) -> str:
    windows = "\\" in directory or directory[1:2] == ":"
    sep = "\\" if windows else "/"
    return directory.rstrip("\\/") + sep + name


class FakeEngine(ContainerEngine):
    """ContainerEngine whose commands run against in-memory images.

    Attributes:
        images: Known images by id or reference.
        containers: Working containers with their command.
        tags: Tags applied to images.
        failures: Program name to forced exit code.
        installer_exit_code: Exit code the installer returns.
        calls: Every engine invocation, in order.
    """

    def __init__(self, base: str, service_healthy: bool = True, **kwargs: Any):
        super().__init__(binary="docker", **kwargs)
        if "windows" in base:
            default_cmd = ["c:\\windows\\system32\\cmd.exe"]
        else:
            default_cmd = ["bash"]
        self.images: dict[str, FakeImage] = {
            base: FakeImage(
                users={"ContainerAdministrator": {"Administrators"}, "root": {"root"}},
                config={
                    "Cmd": default_cmd,
                    "Entrypoint": None,
                    "User": "",
                    "Labels": None,
                },
                service_healthy=service_healthy,
            )
        }
        self.containers: dict[str, tuple[FakeImage, list[str]]] = {}
        self.tags: dict[str, str] = {}
        self.failures: dict[str, int] = {}
        self.installer_exit_code = 0
        self.remote: dict[str, FakeImage] = {}
        self.calls: list[list[str]] = []
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        if prefix == "sha256:":
            return f"sha256:{self._counter:064x}"
        return f"{prefix}{self._counter:012x}"

    def _lookup(self, image: str) -> FakeImage | None:
        if image in self.tags:
            image = self.tags[image]
        return self.images.get(image)

    def _exec(self, state: FakeImage, command: list[str]) -> int:
        program = _program(command)
        if program in self.failures:
            return self.failures[program]

        if command[0] in state.files:
            state.toolchain_installed = True
            return self.installer_exit_code
        if program == "sc.exe":
            return 0 if state.service_healthy else 1060
        if program == "msiexec":
            if command[1:] == ["/regserver"]:
                state.service_healthy = True
            return 0
        if program == "net" and command[1] == "user":
            user = command[2]
            if len(command) == 3:
                return 0 if user in state.users else 2
            if user in state.users:
                return 2
            state.users[user] = set()
            return 0
        if program == "net" and command[1] == "localgroup":
            group, user = command[2], command[3]
            if user not in state.users:
                return 2
            state.users[user].add(group)
            return 0
        if program == "id":
            return 0 if command[-1] in state.users else 1
        if program == "useradd":
            if command[-1] in state.users:
                return 9
            state.users[command[-1]] = set()
            return 0
        if program == "usermod":
            group, user = command[2], command[3]
            if user not in state.users:
                return 6
            state.users[user].add(group)
            return 0
        return 127

    def _commit(self, state: FakeImage, changes: list[str]) -> str:
        image = copy.deepcopy(state)
        for change in changes:
            instruction, _, value = change.partition(" ")
            if instruction == "USER":
                image.config["User"] = value
            elif instruction == "ENTRYPOINT":
                image.config["Entrypoint"] = json.loads(value)
            elif instruction == "CMD":
                image.config["Cmd"] = json.loads(value)
            elif instruction == "LABEL":
                key, _, raw = value.partition("=")
                labels = image.config.get("Labels") or {}
                labels[key] = json.loads(raw)
                image.config["Labels"] = labels
        image_id = self._next_id("sha256:")
        self.images[image_id] = image
        return image_id

    def _dispatch(self, args: list[str]) -> tuple[int, str, str]:
        op = args[0]
        if op == "create":
            image = self._lookup(args[1])
            if image is None:
                return 1, "", f"No such image: {args[1]}"
            container = self._next_id("c")
            self.containers[container] = (copy.deepcopy(image), list(args[2:]))
            return 0, container + "\n", ""
        if op == "start":
            state, command = self.containers[args[-1]]
            if not command:
                return 0, "", ""
            return self._exec(state, command), "", ""
        if op == "cp":
            source, target = args[1], args[2]
            container, _, destination = target.partition(":")
            state, _ = self.containers[container]
            src = Path(source.removesuffix("/."))
            for path in sorted(src.iterdir()):
                state.files[_join(destination, path.name)] = path.read_bytes()
            return 0, "", ""
        if op == "commit":
            changes = [args[i + 1] for i, a in enumerate(args) if a == "--change"]
            state, _ = self.containers[args[-1]]
            return 0, self._commit(state, changes) + "\n", ""
        if op == "rm":
            self.containers.pop(args[-1], None)
            return 0, "", ""
        if op == "tag":
            if self._lookup(args[1]) is None:
                return 1, "", f"No such image: {args[1]}"
            self.tags[args[2]] = args[1]
            return 0, "", ""
        if op == "pull":
            if args[1] not in self.remote:
                return 1, "", f"manifest unknown: {args[1]}"
            self.images[args[1]] = self.remote[args[1]]
            return 0, "", ""
        if op == "image" and args[1] == "inspect":
            image = self._lookup(args[2])
            if image is None:
                return 1, "[]\n", f"No such image: {args[2]}"
            doc = {
                "Id": args[2],
                "RepoDigests": image.repo_digests,
                "Config": image.config,
            }
            return 0, json.dumps([doc]), ""
        return 125, "", f"unknown command {op}"

    def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        returncode, stdout, stderr = self._dispatch(args)
        cmd_str = " ".join([self.binary, *args])
        self._append_log(cmd_str, returncode, stdout, stderr)
        if check and returncode != 0:
            raise EngineCommandError(
                f"{cmd_str} failed with exit code {returncode}: {stderr}",
                exit_code=returncode,
                command=cmd_str,
            )
        return subprocess.CompletedProcess(
            [self.binary, *args], returncode, stdout, stderr
        )

    def publish_remote(self, reference: str, repo_digests: list[str]) -> None:
        """Make a reference pullable with the given repository digests."""
        self.remote[reference] = FakeImage(repo_digests=list(repo_digests))

    def commands_run(self) -> list[list[str]]:
        """Return the container commands passed to create, in order."""
        return [call[2:] for call in self.calls if call[0] == "create" and call[2:]]


def windows_definition_data() -> dict[str, Any]:
    """Return raw data for a Windows proxy image definition."""
    return {
        "image_id": "proxy.windows",
        "name": "Proxy (Windows Server Core)",
        "tag": "registry.example.com/proxy:1.0.0",
        "os_family": "windows",
        "base_image": WINDOWS_BASE,
        "toolchain": {
            "url": INSTALLER_URL,
            "installer_name": "vs_buildtools.exe",
            "options": {
                "workloads": ["Microsoft.VisualStudio.Workload.VCTools"],
            },
        },
        "artifact": {
            "source": "proxy.exe",
            "destination": "C:\\proxy\\proxy.exe",
        },
        "identity": {
            "user": "ProxyAdmin",
            "group": "Users",
        },
    }


def linux_definition_data() -> dict[str, Any]:
    """Return raw data for a Linux proxy image definition."""
    return {
        "image_id": "proxy.linux",
        "name": "Proxy (Debian)",
        "tag": "registry.example.com/proxy:1.0.0-linux",
        "os_family": "linux",
        "base_image": LINUX_BASE,
        "toolchain": {
            "url": INSTALLER_URL,
            "installer_name": "install-toolchain.sh",
            "options": {"locale": None},
        },
        "artifact": {
            "source": "dist/proxy",
            "destination": "/usr/local/bin/proxy",
        },
        "identity": {
            "user": "proxy",
            "group": "proxy",
        },
        "entrypoint": {"args": ["--config", "/etc/proxy/proxy.toml"]},
    }


@pytest.fixture
def definition_data() -> dict[str, Any]:
    """Raw Windows definition data."""
    return windows_definition_data()


@pytest.fixture
def definition() -> ImageDefinitionSchema:
    """Validated Windows definition."""
    return ImageDefinitionSchema.model_validate(windows_definition_data())


@pytest.fixture
def linux_definition() -> ImageDefinitionSchema:
    """Validated Linux definition."""
    return ImageDefinitionSchema.model_validate(linux_definition_data())


@pytest.fixture
def context_dir(tmp_path: Path) -> Path:
    """Build context holding proxy.exe and dist/proxy."""
    ctx = tmp_path / "context"
    (ctx / "dist").mkdir(parents=True)
    (ctx / "proxy.exe").write_bytes(ARTIFACT_BYTES)
    (ctx / "dist" / "proxy").write_bytes(ARTIFACT_BYTES)
    return ctx


@pytest.fixture
def make_engine():
    """Factory for fake engines seeded with a base image."""

    def _make(base: str = WINDOWS_BASE, **kwargs: Any) -> FakeEngine:
        return FakeEngine(base, **kwargs)

    return _make


@pytest.fixture
def fake_engine(make_engine) -> FakeEngine:
    """Fake engine seeded with the Windows base image."""
    return make_engine(WINDOWS_BASE)


@pytest.fixture
def linux_engine(make_engine) -> FakeEngine:
    """Fake engine seeded with the Linux base image."""
    return make_engine(LINUX_BASE)


@pytest.fixture
def mock_installer():
    """Serve the toolchain installer over mocked HTTP."""
    with respx.mock(assert_all_called=False) as router:
        router.get(INSTALLER_URL).mock(
            return_value=httpx.Response(200, content=INSTALLER_BYTES)
        )
        yield router
