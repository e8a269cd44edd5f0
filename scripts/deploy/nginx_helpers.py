"""Helper functions for managing the nginx reverse proxy on the remote host."""

from __future__ import annotations

import logging
import shlex
from textwrap import dedent

from scripts.deploy.deploy_models import DeploymentTarget
from scripts.deploy.remote_host import RemoteShell


logger = logging.getLogger("ubuntu_deploy.nginx")

SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
DEFAULT_SITE = "default"


def render_server_block(target: DeploymentTarget) -> str:
    """Server block routing all traffic on :80 to the container's host port."""
    listen = "80 default_server" if target.proxy_server_name in {"", "_"} else "80"
    server_name = target.proxy_server_name or "_"
    return dedent(
        f"""\
        server {{
            listen {listen};
            server_name {server_name};

            location / {{
                proxy_pass http://127.0.0.1:{int(target.host_port)};
                proxy_http_version 1.1;
                proxy_set_header Host $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
            }}
        }}
        """
    )


def site_available_path(site: str) -> str:
    return f"{SITES_AVAILABLE}/{site}"


def site_enabled_path(site: str) -> str:
    return f"{SITES_ENABLED}/{site}"


def nginx_install_remote_cmd() -> str:
    return (
        "if ! command -v nginx >/dev/null 2>&1; then "
        "echo '[ubuntu-deploy] Installing nginx'; "
        "apt-get update -y && apt-get install -y nginx && systemctl enable --now nginx; "
        "else "
        "echo '[ubuntu-deploy] nginx already installed'; "
        "fi"
    )


class ProxyService:
    """nginx site management. Every method reports success as a bool."""

    def __init__(self, shell: RemoteShell):
        self.shell = shell

    def _ok(self, command: str, *, input_text: str | None = None) -> bool:
        result = self.shell.run(command, privileged=True, input_text=input_text)
        if not result.ok:
            logger.debug("nginx command failed (%s): %s", result.returncode, result.output)
        return result.ok

    def write_config(self, site: str, server_block: str) -> bool:
        return self._ok(f"tee {shlex.quote(site_available_path(site))} >/dev/null", input_text=server_block)

    def link_site(self, site: str) -> bool:
        return self._ok(f"ln -sf {shlex.quote(site_available_path(site))} {shlex.quote(site_enabled_path(site))}")

    def unlink_site(self, site: str) -> bool:
        return self._ok(f"rm -f {shlex.quote(site_enabled_path(site))}")

    def remove_config(self, site: str) -> bool:
        return self._ok(f"rm -f {shlex.quote(site_available_path(site))}")

    def site_file_exists(self, site: str) -> bool:
        return self._ok(f"test -f {shlex.quote(site_available_path(site))}")

    def site_linked(self, site: str) -> bool:
        return self._ok(f"test -L {shlex.quote(site_enabled_path(site))}")

    def validate(self) -> bool:
        result = self.shell.run("nginx -t", privileged=True)
        if not result.ok:
            logger.error("nginx configuration test failed: %s", result.output)
        return result.ok

    def reload(self) -> bool:
        return self._ok("systemctl reload nginx")

    def restart(self) -> bool:
        return self._ok("systemctl restart nginx")

    def ensure_installed(self) -> bool:
        result = self.shell.run(nginx_install_remote_cmd(), privileged=True, stream=True)
        if not result.ok:
            logger.error("nginx installation failed: %s", result.output)
        return result.ok
