"""SSH control channel and file transfer to the remote host.

Every remote command is its own `ssh` process; nothing is multiplexed or
reused between phases. Security note: this module shells out to `ssh`,
`rsync` and `ping`.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


logger = logging.getLogger("ubuntu_deploy.remote")

SSH_CONNECT_TIMEOUT_S = 5
PING_COUNT = 3


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    command: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class RemoteCommandError(RuntimeError):
    """The control channel itself failed (ssh missing, connection refused, ...)."""

    def __init__(self, message: str, *, command: str = "", result: CommandResult | None = None):
        super().__init__(message)
        self.command = command
        self.result = result


def _ssh_options(*, key_path: Path | None) -> list[str]:
    opts: list[str] = []
    if key_path is not None:
        opts.extend(["-i", str(key_path)])
    opts.extend(["-o", "StrictHostKeyChecking=no"])
    return opts


def build_ssh_cmd(*, host: str, remote_command: str, key_path: Path | None = None) -> list[str]:
    return ["ssh", *_ssh_options(key_path=key_path), host, remote_command]


def build_ssh_connectivity_cmd(
    *, host: str, key_path: Path | None = None, timeout_s: int = SSH_CONNECT_TIMEOUT_S
) -> list[str]:
    return [
        "ssh",
        *_ssh_options(key_path=key_path),
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={timeout_s}",
        host,
        "true",
    ]


def build_rsync_cmd(
    *, sources: list[Path], host: str, remote_dir: str, key_path: Path | None = None
) -> list[str]:
    srcs = [str(p) for p in sources]
    # Trailing slash on remote_dir ensures rsync copies into the dir.
    dest = f"{host}:{remote_dir}/"
    cmd = ["rsync", "-az", "--mkpath"]
    if key_path is not None:
        cmd.extend(["-e", f"ssh -i {shlex.quote(str(key_path))} -o StrictHostKeyChecking=no"])
    return [*cmd, *srcs, dest]


def build_ping_cmd(*, host: str, count: int = PING_COUNT) -> list[str]:
    return ["ping", "-c", str(count), host]


def privileged_cmd(command: str) -> str:
    return f"sudo sh -c {shlex.quote(command)}"


class RemoteShell:
    """Runs commands on `user@host` through `ssh` and returns their exit status."""

    def __init__(self, *, host: str, key_path: Path | None = None, use_sudo: bool = True):
        self.host = host
        self.key_path = key_path
        self.use_sudo = use_sudo

    def run(
        self,
        command: str,
        *,
        privileged: bool = False,
        input_text: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        remote_command = privileged_cmd(command) if privileged and self.use_sudo else command
        cmd = build_ssh_cmd(host=self.host, remote_command=remote_command, key_path=self.key_path)
        logger.debug("ssh %s: %s", self.host, remote_command)
        try:
            if stream:
                return self._run_streaming(cmd, remote_command)
            proc = subprocess.run(cmd, input=input_text, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise RemoteCommandError(f"Unable to start ssh: {exc}", command=remote_command) from exc
        if proc.returncode == 255:
            # ssh reserves 255 for its own failures.
            raise RemoteCommandError(
                f"SSH connection to {self.host} failed: {str(proc.stderr or '').strip()}",
                command=remote_command,
                result=CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "", remote_command),
            )
        return CommandResult(
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            command=remote_command,
        )

    def _run_streaming(self, cmd: list[str], remote_command: str) -> CommandResult:
        lines: list[str] = []
        with subprocess.Popen(
            cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True
        ) as proc:
            assert proc.stdout is not None
            for line in proc.stdout:
                line = line.rstrip("\n")
                lines.append(line)
                logger.info("[remote] %s", line)
            returncode = proc.wait()
        if returncode == 255:
            raise RemoteCommandError(f"SSH connection to {self.host} failed", command=remote_command)
        return CommandResult(returncode=returncode, stdout="\n".join(lines), command=remote_command)

    def check_connectivity(self, *, timeout_s: int = SSH_CONNECT_TIMEOUT_S) -> bool:
        cmd = build_ssh_connectivity_cmd(host=self.host, key_path=self.key_path, timeout_s=timeout_s)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout_s * 3)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("SSH connectivity check failed: %s", exc)
            return False
        if proc.returncode != 0:
            logger.error("SSH connectivity check failed: %s", str(proc.stderr or "").strip())
            return False
        return True


def ping_host(host: str, *, count: int = PING_COUNT) -> bool:
    """ICMP reachability; callers treat a failure as a warning only."""
    try:
        proc = subprocess.run(build_ping_cmd(host=host, count=count), capture_output=True, check=False)
    except OSError as exc:
        logger.warning("ping unavailable: %s", exc)
        return False
    return proc.returncode == 0


def transfer_paths(
    *, sources: Iterable[Path], host: str, remote_dir: str, key_path: Path | None = None
) -> list[Path]:
    """Copy each source into remote_dir, one rsync per item. Returns the items that failed."""
    failed: list[Path] = []
    for src in sources:
        cmd = build_rsync_cmd(sources=[src], host=host, remote_dir=remote_dir, key_path=key_path)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            logger.warning("Failed to copy %s: %s", src, exc)
            failed.append(src)
            continue
        if proc.returncode != 0:
            logger.warning("Failed to copy %s: %s", src, str(proc.stderr or "").strip())
            failed.append(src)
        else:
            logger.info("Copied %s to %s:%s", src.name, host, remote_dir)
    return failed
