"""Idempotent convergence of one remote host to a single running deployment.

Given a fresh `HostState` and a `DeploymentTarget`, the engine executes a
fixed, ordered list of actions:

1. stop + remove the existing container (tolerant)
2. remove the existing image (tolerant)
3. require the build descriptor at the remote build path
4. build the image
5. run the container bound to host_port:container_port
6. write + link the proxy site, unlink the stale default site
7. validate the proxy configuration, restoring the previous site links on failure
8. reload the proxy, restarting it if the reload fails

Failures before step 6 are REMOTE_BUILD failures; from step 6 on they are
PROXY failures, which never undo a container that is already running.
"""

from __future__ import annotations

import logging
from typing import Callable

from scripts.deploy.deploy_models import (
    Action,
    ActionKind,
    DeploymentResult,
    DeploymentTarget,
    FailureKind,
    HostState,
)
from scripts.deploy.nginx_helpers import DEFAULT_SITE, render_server_block


logger = logging.getLogger("ubuntu_deploy.converge")


class _Abort(Exception):
    def __init__(self, result: DeploymentResult):
        super().__init__(result.message)
        self.result = result


class ConvergenceEngine:
    def __init__(self, runtime, proxy, build_path: str, dockerfile: str = "Dockerfile"):
        self.runtime = runtime
        self.proxy = proxy
        self.build_path = build_path
        self.dockerfile = dockerfile
        self.actions: list[Action] = []

    def _execute(
        self,
        action: Action,
        fn: Callable[[], bool],
        *,
        failure: FailureKind,
        message: str = "",
    ) -> bool:
        self.actions.append(action)
        logger.info("-> %s", action)
        if fn():
            return True
        if action.tolerant:
            logger.info("%s reported failure; treating resource as already absent", action)
            return False
        raise _Abort(
            DeploymentResult.fatal(
                failure,
                message or f"{action} failed",
                failed_action=action,
                actions=self.actions,
            )
        )

    def converge(self, state: HostState, target: DeploymentTarget) -> DeploymentResult:
        self.actions = []
        try:
            self._replace_workload(state, target)
            self._configure_proxy(state, target)
        except _Abort as abort:
            logger.error("Convergence aborted: %s", abort.result.message)
            return abort.result
        return DeploymentResult.ok(
            f"{target.container_name} running on :{target.host_port} behind nginx site {target.proxy_site}",
            self.actions,
        )

    def _replace_workload(self, state: HostState, target: DeploymentTarget) -> None:
        build = FailureKind.REMOTE_BUILD
        name = target.container_name

        if state.container_exists:
            self._execute(Action(ActionKind.STOP_CONTAINER, name), lambda: self.runtime.stop(name), failure=build)
            self._execute(Action(ActionKind.REMOVE_CONTAINER, name), lambda: self.runtime.remove(name), failure=build)

        if state.image_exists:
            self._execute(
                Action(ActionKind.REMOVE_IMAGE, target.image_name),
                lambda: self.runtime.remove_image(target.image_name),
                failure=build,
            )

        build_action = Action(ActionKind.BUILD_IMAGE, self.build_path)
        if not self.runtime.descriptor_exists(self.build_path, self.dockerfile):
            raise _Abort(
                DeploymentResult.fatal(
                    build,
                    f"No {self.dockerfile} found in {self.build_path} on the remote host",
                    failed_action=build_action,
                    actions=self.actions,
                )
            )

        self._execute(
            build_action,
            lambda: self.runtime.build(self.build_path, target.image_name, self.dockerfile),
            failure=build,
            message=f"docker build of {target.image_name} failed",
        )
        self._execute(
            Action(ActionKind.RUN_CONTAINER, name),
            lambda: self.runtime.run(target.image_name, target.host_port, target.container_port, name),
            failure=build,
            message=f"docker run of {name} on port {target.host_port} failed",
        )

    def _configure_proxy(self, state: HostState, target: DeploymentTarget) -> None:
        proxy = FailureKind.PROXY
        site = target.proxy_site

        self._execute(
            Action(ActionKind.WRITE_PROXY_CONFIG, site),
            lambda: self.proxy.write_config(site, render_server_block(target)),
            failure=proxy,
        )
        self._execute(Action(ActionKind.LINK_PROXY_SITE, site), lambda: self.proxy.link_site(site), failure=proxy)
        unlinked_default = state.default_site_linked and site != DEFAULT_SITE
        if unlinked_default:
            self._execute(
                Action(ActionKind.UNLINK_PROXY_SITE, DEFAULT_SITE),
                lambda: self.proxy.unlink_site(DEFAULT_SITE),
                failure=proxy,
            )

        try:
            self._execute(
                Action(ActionKind.VALIDATE_PROXY, site),
                self.proxy.validate,
                failure=proxy,
                message="nginx configuration test failed; container is running but not exposed through the proxy",
            )
        except _Abort:
            self._restore_links(site, relink_default=unlinked_default)
            raise

        self.actions.append(Action(ActionKind.RELOAD_PROXY))
        logger.info("-> %s", ActionKind.RELOAD_PROXY.value)
        if self.proxy.reload():
            return
        logger.warning("nginx reload failed, falling back to restart")
        self._execute(
            Action(ActionKind.RESTART_PROXY),
            self.proxy.restart,
            failure=proxy,
            message="nginx reload and restart both failed",
        )

    def _restore_links(self, site: str, *, relink_default: bool) -> None:
        """Put sites-enabled back as it was so a later restart still loads a valid config."""
        if site != DEFAULT_SITE and not self.proxy.unlink_site(site):
            logger.warning("Could not unlink %s after failed validation", site)
        if relink_default and not self.proxy.link_site(DEFAULT_SITE):
            logger.warning("Could not relink %s after failed validation", DEFAULT_SITE)
