"""Data model shared by the inspector, the engines and the orchestrator.

Everything here is plain data: no remote calls, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


EXIT_OK = 0
EXIT_LOCAL = 2
EXIT_CONNECTIVITY = 3
EXIT_REMOTE_BUILD = 4
EXIT_PROXY = 5


@dataclass(frozen=True)
class HostState:
    """Snapshot of the remote host, taken fresh on every inspection."""

    container_exists: bool = False
    container_running: bool = False
    image_exists: bool = False
    proxy_site_linked: bool = False
    proxy_site_file_exists: bool = False
    default_site_linked: bool = False

    @property
    def is_empty(self) -> bool:
        return not (
            self.container_exists
            or self.image_exists
            or self.proxy_site_linked
            or self.proxy_site_file_exists
        )


@dataclass(frozen=True)
class DeploymentTarget:
    container_name: str
    image_name: str
    host_port: int
    container_port: int
    proxy_server_name: str = "_"
    proxy_site: str = "deployed_app"


class ActionKind(str, Enum):
    STOP_CONTAINER = "stop_container"
    REMOVE_CONTAINER = "remove_container"
    REMOVE_IMAGE = "remove_image"
    BUILD_IMAGE = "build_image"
    RUN_CONTAINER = "run_container"
    WRITE_PROXY_CONFIG = "write_proxy_config"
    LINK_PROXY_SITE = "link_proxy_site"
    UNLINK_PROXY_SITE = "unlink_proxy_site"
    REMOVE_PROXY_CONFIG_FILE = "remove_proxy_config_file"
    VALIDATE_PROXY = "validate_proxy"
    RELOAD_PROXY = "reload_proxy"
    RESTART_PROXY = "restart_proxy"


# A failed tolerant action means the resource is already in its target state.
TOLERANT_ACTIONS: frozenset[ActionKind] = frozenset(
    {
        ActionKind.STOP_CONTAINER,
        ActionKind.REMOVE_CONTAINER,
        ActionKind.REMOVE_IMAGE,
        ActionKind.UNLINK_PROXY_SITE,
        ActionKind.REMOVE_PROXY_CONFIG_FILE,
    }
)


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    target: str = ""

    @property
    def tolerant(self) -> bool:
        return self.kind in TOLERANT_ACTIONS

    def __str__(self) -> str:
        return f"{self.kind.value}({self.target})" if self.target else self.kind.value


class FailureKind(str, Enum):
    LOCAL = "fatal-local"
    CONNECTIVITY = "fatal-connectivity"
    REMOTE_BUILD = "fatal-remote-build"
    PROXY = "fatal-proxy"


_EXIT_CODES: dict[FailureKind, int] = {
    FailureKind.LOCAL: EXIT_LOCAL,
    FailureKind.CONNECTIVITY: EXIT_CONNECTIVITY,
    FailureKind.REMOTE_BUILD: EXIT_REMOTE_BUILD,
    FailureKind.PROXY: EXIT_PROXY,
}


@dataclass
class DeploymentResult:
    succeeded: bool
    message: str
    failed_action: Action | None = None
    failure: FailureKind | None = None
    actions: list[Action] = field(default_factory=list)

    @classmethod
    def ok(cls, message: str, actions: list[Action] | None = None) -> "DeploymentResult":
        return cls(succeeded=True, message=message, actions=list(actions or []))

    @classmethod
    def fatal(
        cls,
        failure: FailureKind,
        message: str,
        *,
        failed_action: Action | None = None,
        actions: list[Action] | None = None,
    ) -> "DeploymentResult":
        return cls(
            succeeded=False,
            message=message,
            failed_action=failed_action,
            failure=failure,
            actions=list(actions or []),
        )

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return EXIT_OK
        return _EXIT_CODES.get(self.failure, EXIT_LOCAL) if self.failure else EXIT_LOCAL

    def kinds(self) -> list[ActionKind]:
        return [a.kind for a in self.actions]


@dataclass(frozen=True)
class DeployParams:
    """Fully resolved inputs of one deployment (or cleanup) run."""

    ssh_user: str
    ssh_host: str
    ssh_key: Path
    repo_dir: Path = Path(".")
    git_url: str = ""
    git_token: str = ""
    branch: str = "main"
    container_name: str = "deployed-app"
    image_name: str = "deployed-app"
    host_port: int = 8080
    container_port: int = 80
    server_name: str = "_"
    proxy_site: str = "deployed_app"
    remote_dir: str = ""
    dockerfile: str = "Dockerfile"
    use_sudo: bool = True
    verify: bool = True
    transfer_excludes: tuple[str, ...] = (".git",)
    log_dir: Path = Path(".")

    @property
    def ssh_target(self) -> str:
        return f"{self.ssh_user}@{self.ssh_host}"

    @property
    def resolved_remote_dir(self) -> str:
        return self.remote_dir or f"/home/{self.ssh_user}/app"

    def deployment_target(self) -> DeploymentTarget:
        return DeploymentTarget(
            container_name=self.container_name,
            image_name=self.image_name,
            host_port=self.host_port,
            container_port=self.container_port,
            proxy_server_name=self.server_name,
            proxy_site=self.proxy_site,
        )
