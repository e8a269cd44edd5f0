"""Deterministic schema of deployment parameters.

This module is the single source of truth for:
- which keys exist (vars vs secrets)
- where they may come from (.env.deploy, .env.deploy.secrets, interactive prompt)
- whether they are mandatory and/or have defaults
- the validation rules applied before anything touches the remote host

Design goals:
- No heuristic classification (no regex guessing of key names).
- Fail fast with clear error messages.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values


class EnvTarget(str, Enum):
    DOTENV_DEPLOY = "dotenv_deploy"  # `.env.deploy`
    DOTENV_DEPLOY_SECRETS = "dotenv_deploy_secrets"  # `.env.deploy.secrets`
    PROMPT = "prompt"  # asked interactively when unresolved


class VarsEnum(str, Enum):
    # Source
    DEPLOY_GIT_URL = "DEPLOY_GIT_URL"
    DEPLOY_GIT_BRANCH = "DEPLOY_GIT_BRANCH"

    # Connection
    DEPLOY_SSH_USER = "DEPLOY_SSH_USER"
    DEPLOY_SSH_HOST = "DEPLOY_SSH_HOST"
    DEPLOY_SSH_KEY = "DEPLOY_SSH_KEY"

    # Workload
    DEPLOY_APP_PORT = "DEPLOY_APP_PORT"
    DEPLOY_HOST_PORT = "DEPLOY_HOST_PORT"
    DEPLOY_CONTAINER_NAME = "DEPLOY_CONTAINER_NAME"
    DEPLOY_IMAGE_NAME = "DEPLOY_IMAGE_NAME"
    DEPLOY_DOCKERFILE = "DEPLOY_DOCKERFILE"
    DEPLOY_REMOTE_DIR = "DEPLOY_REMOTE_DIR"

    # Proxy
    DEPLOY_SERVER_NAME = "DEPLOY_SERVER_NAME"
    DEPLOY_PROXY_SITE = "DEPLOY_PROXY_SITE"

    # Behaviour
    DEPLOY_USE_SUDO = "DEPLOY_USE_SUDO"
    DEPLOY_VERIFY = "DEPLOY_VERIFY"
    DEPLOY_LOG_DIR = "DEPLOY_LOG_DIR"


class SecretsEnum(str, Enum):
    DEPLOY_GIT_TOKEN = "DEPLOY_GIT_TOKEN"


@dataclass(frozen=True)
class EnvKeySpec:
    key: VarsEnum | SecretsEnum
    mandatory: bool
    default: str | None = None
    targets: frozenset[EnvTarget] = frozenset()
    prompt: str | None = None


class EnvValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[env] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


_VAR = frozenset({EnvTarget.DOTENV_DEPLOY})
_PROMPTED_VAR = frozenset({EnvTarget.DOTENV_DEPLOY, EnvTarget.PROMPT})
_PROMPTED_SECRET = frozenset({EnvTarget.DOTENV_DEPLOY_SECRETS, EnvTarget.PROMPT})


DEPLOY_SCHEMA: tuple[EnvKeySpec, ...] = (
    EnvKeySpec(
        key=VarsEnum.DEPLOY_GIT_URL,
        mandatory=True,
        targets=_PROMPTED_VAR,
        prompt="Enter Git Repository URL",
    ),
    EnvKeySpec(
        key=SecretsEnum.DEPLOY_GIT_TOKEN,
        mandatory=True,
        targets=_PROMPTED_SECRET,
        prompt="Enter Personal Access Token",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_GIT_BRANCH,
        mandatory=False,
        default="main",
        targets=_PROMPTED_VAR,
        prompt="Enter Branch name [default: main]",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_SSH_USER,
        mandatory=True,
        targets=_PROMPTED_VAR,
        prompt="Enter SSH Username",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_SSH_HOST,
        mandatory=True,
        targets=_PROMPTED_VAR,
        prompt="Enter Server IP address",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_SSH_KEY,
        mandatory=True,
        targets=_PROMPTED_VAR,
        prompt="Enter SSH Key Path",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_APP_PORT,
        mandatory=True,
        targets=_PROMPTED_VAR,
        prompt="Enter Application Port",
    ),
    # Defaults to DEPLOY_APP_PORT when unset.
    EnvKeySpec(key=VarsEnum.DEPLOY_HOST_PORT, mandatory=False, targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_CONTAINER_NAME, mandatory=False, default="deployed-app", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_IMAGE_NAME, mandatory=False, default="deployed-app", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_DOCKERFILE, mandatory=False, default="Dockerfile", targets=_VAR),
    # Defaults to /home/<ssh user>/app when unset.
    EnvKeySpec(key=VarsEnum.DEPLOY_REMOTE_DIR, mandatory=False, targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_SERVER_NAME, mandatory=False, default="_", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_PROXY_SITE, mandatory=False, default="deployed_app", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_USE_SUDO, mandatory=False, default="true", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_VERIFY, mandatory=False, default="true", targets=_VAR),
    EnvKeySpec(key=VarsEnum.DEPLOY_LOG_DIR, mandatory=False, default=".", targets=_VAR),
)

# The only keys a `--cleanup` run prompts for.
CONNECTION_KEYS: tuple[VarsEnum, ...] = (
    VarsEnum.DEPLOY_SSH_USER,
    VarsEnum.DEPLOY_SSH_HOST,
    VarsEnum.DEPLOY_SSH_KEY,
)

GIT_URL_RE = re.compile(r"^https://github\.com/.+\.git$")
HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")
NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]{0,127}$")
# One or more nginx server names: "_", "example.com", "*.example.com www.example.com".
SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9_.*-]+( [A-Za-z0-9_.*-]+)*$")


def _schema_keys(schema: Iterable[EnvKeySpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse dotenv file strictly.

    - Comments are ignored.
    - Keys are preserved even if they have empty values (""), so we can detect unknown keys.
    """
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        val = "" if v is None else str(v).strip()
        kv[key] = val
    return kv


def validate_known_keys(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted([k for k in kv.keys() if k not in allowed])
    if unknown:
        raise EnvValidationError(
            context=context,
            problems=["Unknown key(s): " + ", ".join(unknown)],
        )


def apply_defaults(schema: Iterable[EnvKeySpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if spec.key.value in out and str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def validate_required(
    schema: Iterable[EnvKeySpec],
    kv: Mapping[str, str],
    *,
    context: str,
    only: Iterable[VarsEnum | SecretsEnum] | None = None,
) -> None:
    wanted = {k.value for k in only} if only is not None else None
    missing: list[str] = []
    for spec in schema:
        if not spec.mandatory:
            continue
        if wanted is not None and spec.key.value not in wanted:
            continue
        val = str(kv.get(spec.key.value) or "").strip()
        if not val:
            missing.append(spec.key.value)
    if missing:
        raise EnvValidationError(context=context, problems=["Missing mandatory key(s): " + ", ".join(sorted(missing))])


def truthy(val: str | None) -> bool:
    v = str(val or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def is_valid_host(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        pass
    # A dotted-quad that failed ip_address() is a bad IP, not a hostname.
    if re.fullmatch(r"[0-9.]+", value):
        return False
    return bool(HOSTNAME_RE.match(value))


def is_valid_port(value: str) -> bool:
    v = str(value or "").strip()
    # isdigit() alone also accepts digits int() rejects, such as "²".
    return v.isascii() and v.isdigit() and 1 <= int(v) <= 65535


def validate_field_rules(
    kv: Mapping[str, str],
    *,
    context: str,
    only: Iterable[VarsEnum | SecretsEnum] | None = None,
    check_key_file: bool = True,
) -> None:
    """Per-field rules that can't be expressed with (mandatory/default) alone.

    Empty values are left to `validate_required`.
    """
    wanted = {k.value for k in only} if only is not None else None
    problems: list[str] = []

    def value(key: VarsEnum | SecretsEnum) -> str:
        if wanted is not None and key.value not in wanted:
            return ""
        return str(kv.get(key.value) or "").strip()

    git_url = value(VarsEnum.DEPLOY_GIT_URL)
    if git_url and not GIT_URL_RE.match(git_url):
        problems.append(f"{VarsEnum.DEPLOY_GIT_URL.value} must be a GitHub URL ending in .git (got {git_url!r})")

    host = value(VarsEnum.DEPLOY_SSH_HOST)
    if host and not is_valid_host(host):
        problems.append(f"{VarsEnum.DEPLOY_SSH_HOST.value} is not a valid IP address or hostname: {host!r}")

    key_path = value(VarsEnum.DEPLOY_SSH_KEY)
    if key_path and check_key_file and not Path(key_path).expanduser().is_file():
        problems.append(f"{VarsEnum.DEPLOY_SSH_KEY.value} file does not exist at {key_path}")

    for port_key in (VarsEnum.DEPLOY_APP_PORT, VarsEnum.DEPLOY_HOST_PORT):
        port = value(port_key)
        if port and not is_valid_port(port):
            problems.append(f"{port_key.value} must be a number between 1 and 65535 (got {port!r})")

    server_name = value(VarsEnum.DEPLOY_SERVER_NAME)
    if server_name and not SERVER_NAME_RE.fullmatch(server_name):
        problems.append(
            f"{VarsEnum.DEPLOY_SERVER_NAME.value} must be space-separated host names, '_' or wildcards (got {server_name!r})"
        )

    for name_key in (VarsEnum.DEPLOY_CONTAINER_NAME, VarsEnum.DEPLOY_IMAGE_NAME, VarsEnum.DEPLOY_PROXY_SITE):
        name = value(name_key)
        if name and not NAME_RE.match(name):
            problems.append(f"{name_key.value} must be lowercase letters, digits, '.', '_' or '-' (got {name!r})")

    if problems:
        raise EnvValidationError(context=context, problems=problems)


def get_spec(schema: Iterable[EnvKeySpec], key: VarsEnum | SecretsEnum) -> EnvKeySpec:
    for spec in schema:
        if spec.key == key:
            return spec
    raise KeyError(key)
