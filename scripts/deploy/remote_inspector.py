"""Read-only inspection of the remote host's container, image and proxy state."""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from scripts.deploy.deploy_models import DeploymentTarget, HostState
from scripts.deploy.nginx_helpers import DEFAULT_SITE
from scripts.deploy.remote_host import RemoteCommandError


logger = logging.getLogger("ubuntu_deploy.inspect")

T = TypeVar("T")


class RemoteInspector:
    def __init__(self, runtime, proxy, target: DeploymentTarget):
        self.runtime = runtime
        self.proxy = proxy
        self.target = target

    def _query(self, what: str, fn: Callable[[], T], absent: T) -> T:
        # An unanswerable query plans the same as an absent resource.
        try:
            return fn()
        except RemoteCommandError as exc:
            logger.warning("Could not query %s, treating as absent: %s", what, exc)
            return absent

    def inspect(self) -> HostState:
        containers = self._query("containers", self.runtime.list_containers, [])
        images = self._query("images", self.runtime.list_images, [])

        ours = [c for c in containers if c.name == self.target.container_name]
        site = self.target.proxy_site
        state = HostState(
            container_exists=bool(ours),
            container_running=any(c.running for c in ours),
            image_exists=any(
                self.target.image_name in {img.repository, img.id} for img in images
            ),
            proxy_site_linked=self._query("proxy site link", lambda: self.proxy.site_linked(site), False),
            proxy_site_file_exists=self._query(
                "proxy site file", lambda: self.proxy.site_file_exists(site), False
            ),
            default_site_linked=self._query(
                "default proxy site", lambda: self.proxy.site_linked(DEFAULT_SITE), False
            ),
        )
        logger.info("Remote state: %s", state)
        return state
