#!/usr/bin/env python3
"""Deploy a containerized app to an Ubuntu server over SSH.

Clones (or pulls) the application repository, checks that it has a build
descriptor, syncs the checkout to the remote host, installs Docker and nginx
when missing, and converges the host to exactly one running container behind
an nginx site. Re-running converges to the same end state.

`--cleanup` instead removes every container, image and the nginx site from
the host, prompting only for the SSH user, host and key.

Run from the repo root: `python -m scripts.deploy.ubuntu_deploy [--cleanup]`.

Security note: this script shells out to `git`, `ssh`, `rsync` and `ping`.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import shlex
import subprocess
import sys
from datetime import date
from pathlib import Path

import requests

from scripts.deploy.convergence import ConvergenceEngine
from scripts.deploy.deploy_models import (
    EXIT_LOCAL,
    DeploymentResult,
    DeployParams,
    FailureKind,
)
from scripts.deploy.deploy_params import (
    collect_connection_settings,
    collect_settings,
    params_from_settings,
    resolve_value,
)
from scripts.deploy.docker_compose_helpers import BuildDescriptorError, resolve_build_descriptor
from scripts.deploy.docker_runtime import ContainerRuntime
from scripts.deploy.env_schema import DEPLOY_SCHEMA, EnvValidationError, SecretsEnum, VarsEnum, get_spec
from scripts.deploy.git_helpers import SourceFetchError, fetch_source
from scripts.deploy.nginx_helpers import ProxyService
from scripts.deploy.remote_host import RemoteCommandError, RemoteShell, ping_host, transfer_paths
from scripts.deploy.remote_inspector import RemoteInspector
from scripts.deploy.teardown import TeardownEngine


logger = logging.getLogger("ubuntu_deploy")

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
HTTP_CHECK_TIMEOUT_S = 10


def log_file_path(log_dir: Path, today: date | None = None) -> Path:
    return log_dir / f"deploy_{(today or date.today()):%Y%m%d}.log"


def configure_logging(log_dir: Path) -> Path:
    """Attach the append-only daily log file to the `ubuntu_deploy` logger tree."""
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_file_path(log_dir)

    root = logging.getLogger("ubuntu_deploy")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()

    file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(file_handler)
    return path


class StepPrinter:
    """Numbered console steps; every line is mirrored to the log file."""

    step_color = "\033[95m"
    color_reset = "\033[0m"

    def __init__(self, prefix: str = "[ubuntu-deploy]"):
        self.prefix = prefix
        self.step_number = 0

    def step(self, message: str, *, icon: str = "🚀") -> None:
        self.step_number += 1
        print(f"{self.step_color}{self.prefix} {icon} Step {self.step_number}: {message}{self.color_reset}")
        logger.info("Step %d: %s", self.step_number, message)

    def info(self, message: str, *, icon: str = "ℹ️") -> None:
        print(f"{self.prefix} {icon} {message}")
        logger.info(message)

    def warn(self, message: str) -> None:
        print(f"{self.prefix} ⚠️ {message}")
        logger.warning(message)


def check_http(url: str, *, timeout: int = HTTP_CHECK_TIMEOUT_S) -> bool:
    """True when something answered through the proxy without a gateway/server error."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("HTTP check of %s failed: %s", url, exc)
        return False
    if int(response.status_code) >= 500:
        logger.warning("HTTP check of %s returned %s", url, response.status_code)
        return False
    return True


def list_transfer_items(repo_dir: Path, excludes: tuple[str, ...]) -> list[Path]:
    return sorted(p for p in repo_dir.iterdir() if p.name not in excludes)


class DeploymentOrchestrator:
    """Sequences one deployment (or cleanup) run and owns its exit status.

    Nothing raised below this class escapes `run`/`run_cleanup`; every failure
    becomes a `DeploymentResult` and then an exit code.
    """

    def __init__(self, params: DeployParams, *, shell: RemoteShell | None = None, printer: StepPrinter | None = None):
        self.params = params
        self.shell = shell or RemoteShell(host=params.ssh_target, key_path=params.ssh_key, use_sudo=params.use_sudo)
        self.runtime = ContainerRuntime(self.shell)
        self.proxy = ProxyService(self.shell)
        self.out = printer or StepPrinter()

    def run(self) -> int:
        return self._guarded(self._deploy)

    def run_cleanup(self) -> int:
        return self._guarded(self._cleanup)

    def _guarded(self, phase) -> int:
        try:
            result = phase()
        except RemoteCommandError as exc:
            result = DeploymentResult.fatal(FailureKind.CONNECTIVITY, f"Control channel failed: {exc}")
        except (OSError, RuntimeError, subprocess.SubprocessError) as exc:
            result = DeploymentResult.fatal(FailureKind.LOCAL, f"{type(exc).__name__}: {exc}")
        return self._finish(result)

    def _check_control_channel(self) -> DeploymentResult | None:
        if ping_host(self.params.ssh_host):
            self.out.info("Ping successful")
        else:
            self.out.warn(f"Cannot ping {self.params.ssh_host} (ICMP may be blocked), proceeding with SSH test")
        if not self.shell.check_connectivity():
            return DeploymentResult.fatal(
                FailureKind.CONNECTIVITY, f"SSH connection to {self.params.ssh_target} failed"
            )
        self.out.info("SSH connection test successful")
        return None

    def _deploy(self) -> DeploymentResult:
        p = self.params

        self.out.step("Checking for a build descriptor", icon="🔎")
        try:
            descriptor = resolve_build_descriptor(p.repo_dir, p.dockerfile)
        except (BuildDescriptorError, RuntimeError) as exc:
            return DeploymentResult.fatal(FailureKind.LOCAL, str(exc))
        self.out.info(f"Found {descriptor.source} (build context: {descriptor.context})")

        self.out.step(f"Testing connectivity to {p.ssh_host}", icon="🔌")
        failed = self._check_control_channel()
        if failed is not None:
            return failed

        remote_dir = p.resolved_remote_dir
        self.out.step(f"Syncing application files to {remote_dir}", icon="📦")
        mkdir = self.shell.run(f"mkdir -p {shlex.quote(remote_dir)}")
        if not mkdir.ok:
            return DeploymentResult.fatal(
                FailureKind.REMOTE_BUILD, f"Failed to create remote app directory {remote_dir}: {mkdir.output}"
            )
        for item in transfer_paths(
            sources=list_transfer_items(p.repo_dir, p.transfer_excludes),
            host=p.ssh_target,
            remote_dir=remote_dir,
            key_path=p.ssh_key,
        ):
            self.out.warn(f"Failed to copy {item.name}")

        self.out.step("Installing Docker and nginx if missing", icon="🧰")
        if not self.runtime.ensure_installed():
            return DeploymentResult.fatal(FailureKind.REMOTE_BUILD, "Docker installation failed on the remote host")
        if not self.proxy.ensure_installed():
            return DeploymentResult.fatal(FailureKind.REMOTE_BUILD, "nginx installation failed on the remote host")

        self.out.step("Inspecting remote host", icon="🧭")
        target = p.deployment_target()
        state = RemoteInspector(self.runtime, self.proxy, target).inspect()
        self.out.info(
            f"container={'yes' if state.container_exists else 'no'} "
            f"image={'yes' if state.image_exists else 'no'} "
            f"site={'linked' if state.proxy_site_linked else 'absent'}"
        )

        self.out.step(f"Deploying {target.image_name} as {target.container_name}", icon="🏗️")
        engine = ConvergenceEngine(
            self.runtime,
            self.proxy,
            build_path=descriptor.remote_build_path(remote_dir),
            dockerfile=descriptor.dockerfile,
        )
        result = engine.converge(state, target)

        if result.succeeded and p.verify:
            self.out.step("Verifying the site through nginx", icon="🌐")
            url = f"http://{p.ssh_host}/"
            if check_http(url):
                self.out.info(f"{url} is reachable")
            else:
                self.out.warn(f"{url} did not respond cleanly; check the container logs")
        return result

    def _cleanup(self) -> DeploymentResult:
        p = self.params
        self.out.step(f"Connecting to {p.ssh_target}", icon="🔌")
        failed = self._check_control_channel()
        if failed is not None:
            return failed

        self.out.step("Removing containers, images and nginx sites", icon="🧹")
        engine = TeardownEngine(self.runtime, self.proxy, sites=[p.proxy_site], compose_dir=p.resolved_remote_dir)
        return engine.teardown()

    def _finish(self, result: DeploymentResult) -> int:
        if result.succeeded:
            logger.info("=== Run COMPLETED SUCCESSFULLY: %s ===", result.message)
            print(f"{self.out.prefix} ✅ Done. {result.message}")
        else:
            failure = result.failure.value if result.failure else "fatal"
            if result.failed_action is not None:
                logger.error("Failed action: %s", result.failed_action)
            logger.error("=== Run FAILED (%s): %s ===", failure, result.message)
            print(f"{self.out.prefix} ❌ Failed ({failure}): {result.message}", file=sys.stderr)
        return result.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy a Dockerized app to an Ubuntu server over SSH")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove all containers, images and the nginx site from the remote host",
    )
    parser.add_argument("--git-url", default=None, help="Resolution: CLI -> DEPLOY_GIT_URL env var -> .env.deploy -> prompt")
    parser.add_argument("--branch", default=None, help="Git branch (default: main)")
    parser.add_argument("--ssh-user", default=None, help="Remote SSH username")
    parser.add_argument("--host", default=None, help="Remote server IP address or hostname")
    parser.add_argument("--ssh-key", default=None, help="Path to the SSH private key")
    parser.add_argument("--app-port", default=None, help="Port the application listens on inside the container")
    parser.add_argument("--host-port", default=None, help="Host port the container is published on (default: --app-port)")
    parser.add_argument("--container-name", default=None, help="Container name (default: deployed-app)")
    parser.add_argument("--image-name", default=None, help="Image tag (default: deployed-app)")
    parser.add_argument("--dockerfile", default=None, help="Dockerfile name relative to the build context")
    parser.add_argument("--remote-dir", default=None, help="Remote directory (default: /home/<ssh user>/app)")
    parser.add_argument("--server-name", default=None, help="nginx server_name (default: _ = any)")
    parser.add_argument("--proxy-site", default=None, help="nginx site file name (default: deployed_app)")
    parser.add_argument("--log-dir", default=None, help="Directory for deploy_YYYYMMDD.log (default: cwd)")
    parser.add_argument("--workdir", default=".", help="Directory the repository is cloned into")
    parser.add_argument(
        "--config-dir",
        default=".",
        help="Directory holding .env.deploy / .env.deploy.secrets (default: cwd)",
    )
    parser.add_argument("--no-sudo", action="store_true", help="Run remote docker/nginx commands without sudo")
    parser.add_argument("--skip-verify", action="store_true", help="Skip the HTTP check after deployment")
    return parser


def main(argv: list[str] | None = None, *, prompt_fn=input, secret_prompt_fn=getpass.getpass) -> int:
    args = build_parser().parse_args(argv)
    config_root = Path(args.config_dir).expanduser().resolve()

    log_dir = resolve_value(
        get_spec(DEPLOY_SCHEMA, VarsEnum.DEPLOY_LOG_DIR),
        cli_value=args.log_dir,
        config_root=config_root,
        prompt_fn=None,
        secret_prompt_fn=None,
    )
    log_path = configure_logging(Path(log_dir or ".").expanduser())
    logger.info("Run started (%s mode)", "cleanup" if args.cleanup else "deploy")

    try:
        if args.cleanup:
            print("[CLEANUP] Running in cleanup mode...")
            kv = collect_connection_settings(args, config_root=config_root, prompt_fn=prompt_fn)
        else:
            kv = collect_settings(
                args,
                config_root=config_root,
                prompt_fn=prompt_fn,
                secret_prompt_fn=secret_prompt_fn,
            )
    except EnvValidationError as e:
        logger.error(e.format())
        print(e.format(), file=sys.stderr)
        return EXIT_LOCAL

    if args.cleanup:
        params = params_from_settings(kv, args=args)
        return DeploymentOrchestrator(params).run_cleanup()

    printer = StepPrinter()
    printer.step("Fetching application source", icon="📥")
    try:
        repo_dir = fetch_source(
            git_url=kv[VarsEnum.DEPLOY_GIT_URL.value],
            token=kv.get(SecretsEnum.DEPLOY_GIT_TOKEN.value, ""),
            branch=kv[VarsEnum.DEPLOY_GIT_BRANCH.value],
            workdir=Path(args.workdir).expanduser().resolve(),
        )
    except SourceFetchError as exc:
        logger.error("Source fetch failed: %s", exc)
        print(f"[ubuntu-deploy] ❌ Failed (fatal-local): {exc}", file=sys.stderr)
        return EXIT_LOCAL
    printer.info(f"Repository ready at {repo_dir} (log: {log_path})")

    params = params_from_settings(kv, repo_dir=repo_dir, args=args)
    return DeploymentOrchestrator(params, printer=printer).run()


if __name__ == "__main__":
    raise SystemExit(main())
