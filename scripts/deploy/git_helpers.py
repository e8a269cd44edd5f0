"""Clone or update the application repository before deployment."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit


logger = logging.getLogger("ubuntu_deploy.git")


class SourceFetchError(RuntimeError):
    pass


def repo_dir_name(git_url: str) -> str:
    name = git_url.rstrip("/").rsplit("/", 1)[-1]
    return name[:-4] if name.endswith(".git") else name


def authenticated_url(git_url: str, token: str) -> str:
    if not token:
        return git_url
    parts = urlsplit(git_url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))


def redact(text: str, token: str) -> str:
    return text.replace(token, "***") if token else text


def build_git_clone_cmd(*, url: str, branch: str, dest: Path) -> list[str]:
    return ["git", "clone", "--branch", branch, url, str(dest)]


def build_git_checkout_cmd(*, repo_dir: Path, branch: str) -> list[str]:
    return ["git", "-C", str(repo_dir), "checkout", branch]


def build_git_pull_cmd(*, repo_dir: Path, branch: str) -> list[str]:
    return ["git", "-C", str(repo_dir), "pull", "origin", branch]


def _git(cmd: list[str], *, token: str) -> None:
    logger.info("Running: %s", redact(" ".join(cmd), token))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise SourceFetchError(f"git is not available: {exc}") from exc
    if result.returncode != 0:
        err = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        raise SourceFetchError(redact(f"git failed ({result.returncode}): {err}", token))


def fetch_source(*, git_url: str, token: str, branch: str, workdir: Path) -> Path:
    """Pull into an existing checkout, or clone a fresh one. Returns the checkout directory."""
    repo_dir = workdir / repo_dir_name(git_url)
    if (repo_dir / ".git").is_dir():
        logger.info("Repository %s exists, pulling latest changes on %s", repo_dir, branch)
        _git(build_git_checkout_cmd(repo_dir=repo_dir, branch=branch), token=token)
        _git(build_git_pull_cmd(repo_dir=repo_dir, branch=branch), token=token)
    else:
        logger.info("Cloning %s (%s) into %s", git_url, branch, repo_dir)
        _git(
            build_git_clone_cmd(url=authenticated_url(git_url, token), branch=branch, dest=repo_dir),
            token=token,
        )
    return repo_dir
