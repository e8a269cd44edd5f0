"""Docker CLI on the remote host, driven through the SSH control channel."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from scripts.deploy.remote_host import CommandResult, RemoteCommandError, RemoteShell


logger = logging.getLogger("ubuntu_deploy.docker")


@dataclass(frozen=True)
class ContainerInfo:
    name: str
    state: str = ""

    @property
    def running(self) -> bool:
        return self.state.strip().lower() == "running"


@dataclass(frozen=True)
class ImageInfo:
    id: str
    repository: str = ""


def docker_ps_remote_cmd() -> str:
    return "docker ps -a --format '{{.Names}}\t{{.State}}'"


def docker_images_remote_cmd() -> str:
    return "docker images -a --format '{{.ID}}\t{{.Repository}}'"


def docker_stop_remote_cmd(*, name: str) -> str:
    return f"docker stop {shlex.quote(name)}"


def docker_rm_remote_cmd(*, name: str, force: bool = False) -> str:
    return f"docker rm {'-f ' if force else ''}{shlex.quote(name)}"


def docker_rmi_remote_cmd(*, ref: str, force: bool = False) -> str:
    return f"docker rmi {'-f ' if force else ''}{shlex.quote(ref)}"


def descriptor_exists_remote_cmd(*, path: str, dockerfile: str) -> str:
    descriptor = path.rstrip("/") + "/" + dockerfile
    return f"test -f {shlex.quote(descriptor)}"


def docker_build_remote_cmd(*, path: str, tag: str, dockerfile: str = "Dockerfile") -> str:
    return f"cd {shlex.quote(path)} && docker build -f {shlex.quote(dockerfile)} -t {shlex.quote(tag)} ."


def docker_run_remote_cmd(*, tag: str, host_port: int, container_port: int, name: str) -> str:
    return (
        f"docker run -d --name {shlex.quote(name)} "
        f"-p {int(host_port)}:{int(container_port)} {shlex.quote(tag)}"
    )


def compose_down_remote_cmd(*, path: str) -> str:
    return f"cd {shlex.quote(path)} && docker compose down --remove-orphans"


def docker_install_remote_cmd() -> str:
    return (
        "if ! command -v docker >/dev/null 2>&1; then "
        "echo '[ubuntu-deploy] Installing Docker'; "
        "apt-get update -y && apt-get install -y docker.io && systemctl enable --now docker; "
        "else "
        "echo '[ubuntu-deploy] Docker already installed'; "
        "fi"
    )


def _parse_rows(stdout: str) -> list[list[str]]:
    rows: list[list[str]] = []
    for line in stdout.splitlines():
        if not line.strip():
            continue
        rows.append([part.strip() for part in line.split("\t")])
    return rows


class ContainerRuntime:
    """Container/image operations against the remote docker daemon.

    Listing methods raise `RemoteCommandError` when the query cannot be
    answered; mutating methods return whether the command succeeded and
    leave the interpretation to the caller's tolerance policy.
    """

    def __init__(self, shell: RemoteShell):
        self.shell = shell

    def _run(self, command: str, *, stream: bool = False) -> CommandResult:
        result = self.shell.run(command, privileged=True, stream=stream)
        if not result.ok:
            logger.debug("docker command failed (%s): %s", result.returncode, result.output)
        return result

    def list_containers(self) -> list[ContainerInfo]:
        result = self._run(docker_ps_remote_cmd())
        if not result.ok:
            raise RemoteCommandError("docker ps failed", command=result.command, result=result)
        return [ContainerInfo(name=row[0], state=row[1] if len(row) > 1 else "") for row in _parse_rows(result.stdout)]

    def list_images(self) -> list[ImageInfo]:
        result = self._run(docker_images_remote_cmd())
        if not result.ok:
            raise RemoteCommandError("docker images failed", command=result.command, result=result)
        return [ImageInfo(id=row[0], repository=row[1] if len(row) > 1 else "") for row in _parse_rows(result.stdout)]

    def stop(self, name: str) -> bool:
        return self._run(docker_stop_remote_cmd(name=name)).ok

    def remove(self, name: str, force: bool = False) -> bool:
        return self._run(docker_rm_remote_cmd(name=name, force=force)).ok

    def remove_image(self, ref: str, force: bool = False) -> bool:
        return self._run(docker_rmi_remote_cmd(ref=ref, force=force)).ok

    def descriptor_exists(self, path: str, dockerfile: str = "Dockerfile") -> bool:
        return self._run(descriptor_exists_remote_cmd(path=path, dockerfile=dockerfile)).ok

    def build(self, path: str, tag: str, dockerfile: str = "Dockerfile") -> bool:
        return self._run(docker_build_remote_cmd(path=path, tag=tag, dockerfile=dockerfile), stream=True).ok

    def run(self, tag: str, host_port: int, container_port: int, name: str) -> bool:
        result = self._run(
            docker_run_remote_cmd(tag=tag, host_port=host_port, container_port=container_port, name=name)
        )
        if not result.ok:
            logger.error("docker run failed: %s", result.output)
        return result.ok

    def compose_down(self, path: str) -> bool:
        return self._run(compose_down_remote_cmd(path=path)).ok

    def ensure_installed(self) -> bool:
        result = self._run(docker_install_remote_cmd(), stream=True)
        if not result.ok:
            logger.error("Docker installation failed: %s", result.output)
        return result.ok
