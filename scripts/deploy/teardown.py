"""Host-wide teardown: drive the remote host to "nothing deployed".

Every container and image on the host is removed, not only the ones this
tool created. Every step tolerates an already-absent resource, so teardown
only ever reports success once the control channel is up.
"""

from __future__ import annotations

import logging
from typing import Iterable

from scripts.deploy.deploy_models import Action, ActionKind, DeploymentResult
from scripts.deploy.remote_host import RemoteCommandError


logger = logging.getLogger("ubuntu_deploy.teardown")


class TeardownEngine:
    def __init__(self, runtime, proxy, sites: Iterable[str], compose_dir: str | None = None):
        self.runtime = runtime
        self.proxy = proxy
        self.sites = list(dict.fromkeys(sites))
        self.compose_dir = compose_dir
        self.actions: list[Action] = []

    def _step(self, action: Action, ok: bool) -> None:
        self.actions.append(action)
        if ok:
            logger.info("-> %s", action)
        else:
            logger.info("-> %s (already absent)", action)

    def teardown(self) -> DeploymentResult:
        self.actions = []

        if self.compose_dir:
            if not self.runtime.compose_down(self.compose_dir):
                logger.info("docker compose down skipped: no compose project in %s", self.compose_dir)

        try:
            containers = self.runtime.list_containers()
        except RemoteCommandError as exc:
            logger.warning("Could not list containers: %s", exc)
            containers = []
        for container in containers:
            self._step(Action(ActionKind.STOP_CONTAINER, container.name), self.runtime.stop(container.name))
            # -f also removes a container that refused to stop.
            removed = self.runtime.remove(container.name, force=True)
            self._step(Action(ActionKind.REMOVE_CONTAINER, container.name), removed)

        try:
            images = self.runtime.list_images()
        except RemoteCommandError as exc:
            logger.warning("Could not list images: %s", exc)
            images = []
        for image_id in dict.fromkeys(img.id for img in images):
            self._step(Action(ActionKind.REMOVE_IMAGE, image_id), self.runtime.remove_image(image_id, force=True))

        for site in self.sites:
            self._step(Action(ActionKind.UNLINK_PROXY_SITE, site), self.proxy.unlink_site(site))
            self._step(Action(ActionKind.REMOVE_PROXY_CONFIG_FILE, site), self.proxy.remove_config(site))

        reloaded = self.proxy.reload()
        self._step(Action(ActionKind.RELOAD_PROXY), reloaded)
        if not reloaded:
            logger.warning("nginx reload failed during teardown (nginx may not be installed)")

        return DeploymentResult.ok(
            f"Removed {len(containers)} container(s), {len(images)} image(s) and {len(self.sites)} proxy site(s)",
            self.actions,
        )
