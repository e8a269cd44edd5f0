from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    # Allow tests to import `scripts.*` as a package.
    repo_root = Path(__file__).parents[2]
    sys.path.append(str(repo_root))


class FakeHost:
    """In-memory remote host implementing both the docker and the nginx collaborator."""

    def __init__(self, *, build_path: str = "/home/deploy/app", default_site: bool = False):
        self.containers: dict[str, bool] = {}  # name -> running
        self.images: dict[str, str] = {}  # id -> repository
        self.bindings: dict[str, int] = {}
        self.descriptors: set[str] = {f"{build_path}/Dockerfile"}
        self.sites_available: dict[str, str] = {}
        self.sites_enabled: set[str] = set()
        self.loaded_config: dict[str, str] = {}  # what the running nginx serves
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self._next_id = 0
        if default_site:
            self.sites_available["default"] = "server { listen 80 default_server; }"
            self.sites_enabled.add("default")
            self.loaded_config = {"default": self.sites_available["default"]}

    # -- helpers
    def add_image(self, repository: str) -> str:
        self._next_id += 1
        image_id = f"sha{self._next_id:04d}"
        self.images[image_id] = repository
        return image_id

    def snapshot(self) -> tuple:
        return (
            sorted(self.containers.items()),
            sorted(self.images.values()),
            sorted(self.sites_available),
            sorted(self.sites_enabled),
        )

    def _record(self, call: str) -> None:
        self.calls.append(call)

    # -- container runtime
    def list_containers(self):
        from scripts.deploy.docker_runtime import ContainerInfo
        from scripts.deploy.remote_host import RemoteCommandError

        self._record("list_containers")
        if "list_containers" in self.fail:
            raise RemoteCommandError("docker ps failed")
        return [ContainerInfo(name, "running" if running else "exited") for name, running in self.containers.items()]

    def list_images(self):
        from scripts.deploy.docker_runtime import ImageInfo
        from scripts.deploy.remote_host import RemoteCommandError

        self._record("list_images")
        if "list_images" in self.fail:
            raise RemoteCommandError("docker images failed")
        return [ImageInfo(image_id, repo) for image_id, repo in self.images.items()]

    def stop(self, name: str) -> bool:
        self._record(f"stop:{name}")
        if "stop" in self.fail or name not in self.containers:
            return False
        self.containers[name] = False
        return True

    def remove(self, name: str, force: bool = False) -> bool:
        self._record(f"remove:{name}")
        if name not in self.containers or (self.containers[name] and not force):
            return False
        del self.containers[name]
        self.bindings.pop(name, None)
        return True

    def remove_image(self, ref: str, force: bool = False) -> bool:
        self._record(f"remove_image:{ref}")
        matches = [i for i, repo in self.images.items() if ref in {i, repo}]
        for image_id in matches:
            del self.images[image_id]
        return bool(matches)

    def descriptor_exists(self, path: str, dockerfile: str = "Dockerfile") -> bool:
        self._record(f"descriptor_exists:{path}")
        return f"{path.rstrip('/')}/{dockerfile}" in self.descriptors

    def build(self, path: str, tag: str, dockerfile: str = "Dockerfile") -> bool:
        self._record(f"build:{tag}")
        if "build" in self.fail:
            return False
        self.add_image(tag)
        return True

    def run(self, tag: str, host_port: int, container_port: int, name: str) -> bool:
        self._record(f"run:{name}")
        if "run" in self.fail or name in self.containers or tag not in self.images.values():
            return False
        if host_port in self.bindings.values():
            return False
        self.containers[name] = True
        self.bindings[name] = host_port
        return True

    def compose_down(self, path: str) -> bool:
        self._record("compose_down")
        return False

    def ensure_installed(self) -> bool:
        return True

    # -- proxy
    def write_config(self, site: str, server_block: str) -> bool:
        self._record(f"write_config:{site}")
        self.sites_available[site] = server_block
        return True

    def link_site(self, site: str) -> bool:
        self._record(f"link_site:{site}")
        self.sites_enabled.add(site)
        return True

    def unlink_site(self, site: str) -> bool:
        self._record(f"unlink_site:{site}")
        self.sites_enabled.discard(site)
        return True

    def remove_config(self, site: str) -> bool:
        self._record(f"remove_config:{site}")
        self.sites_available.pop(site, None)
        return True

    def site_file_exists(self, site: str) -> bool:
        return site in self.sites_available

    def site_linked(self, site: str) -> bool:
        return site in self.sites_enabled

    def validate(self) -> bool:
        self._record("validate")
        return "validate" not in self.fail

    def _load(self, op: str) -> bool:
        self._record(op)
        if op in self.fail:
            return False
        self.loaded_config = {s: self.sites_available[s] for s in self.sites_enabled if s in self.sites_available}
        return True

    def reload(self) -> bool:
        return self._load("reload")

    def restart(self) -> bool:
        return self._load("restart")


class RecordingShell:
    """Stands in for `RemoteShell`; answers by substring match, exit 0 by default."""

    def __init__(self, responses: dict | None = None, *, connected: bool = True):
        from scripts.deploy.remote_host import CommandResult

        self._result_cls = CommandResult
        self.responses = dict(responses or {})
        self.connected = connected
        self.commands: list[str] = []
        self.privileged: list[bool] = []
        self.inputs: list[str | None] = []
        self.connectivity_checks = 0

    def run(self, command: str, *, privileged: bool = False, input_text: str | None = None, stream: bool = False):
        self.commands.append(command)
        self.privileged.append(privileged)
        self.inputs.append(input_text)
        for needle, response in self.responses.items():
            if needle in command:
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, int):
                    return self._result_cls(returncode=response, command=command)
                return response
        return self._result_cls(returncode=0, command=command)

    def check_connectivity(self, **_kwargs) -> bool:
        self.connectivity_checks += 1
        return self.connected


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def make_fake_host():
    return FakeHost


@pytest.fixture
def make_shell():
    return RecordingShell
