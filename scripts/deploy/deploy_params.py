"""Resolve deployment parameters.

Resolution for every key: CLI flag -> process env var -> `.env.deploy.secrets`
(secrets) / `.env.deploy` (vars) -> interactive prompt -> schema default.
"""

from __future__ import annotations

import argparse
import getpass
import os
from pathlib import Path
from typing import Callable, Iterable, Mapping

from dotenv import dotenv_values

from scripts.deploy.deploy_models import DeployParams
from scripts.deploy.env_schema import (
    CONNECTION_KEYS,
    DEPLOY_SCHEMA,
    EnvKeySpec,
    EnvTarget,
    SecretsEnum,
    VarsEnum,
    apply_defaults,
    truthy,
    validate_field_rules,
    validate_required,
)


DEPLOY_DOTENV = ".env.deploy"
DEPLOY_SECRETS_DOTENV = ".env.deploy.secrets"

PromptFn = Callable[[str], str]

# argparse dest for each key that can be given on the command line.
CLI_DESTS: dict[VarsEnum, str] = {
    VarsEnum.DEPLOY_GIT_URL: "git_url",
    VarsEnum.DEPLOY_GIT_BRANCH: "branch",
    VarsEnum.DEPLOY_SSH_USER: "ssh_user",
    VarsEnum.DEPLOY_SSH_HOST: "host",
    VarsEnum.DEPLOY_SSH_KEY: "ssh_key",
    VarsEnum.DEPLOY_APP_PORT: "app_port",
    VarsEnum.DEPLOY_HOST_PORT: "host_port",
    VarsEnum.DEPLOY_CONTAINER_NAME: "container_name",
    VarsEnum.DEPLOY_IMAGE_NAME: "image_name",
    VarsEnum.DEPLOY_DOCKERFILE: "dockerfile",
    VarsEnum.DEPLOY_REMOTE_DIR: "remote_dir",
    VarsEnum.DEPLOY_SERVER_NAME: "server_name",
    VarsEnum.DEPLOY_PROXY_SITE: "proxy_site",
    VarsEnum.DEPLOY_LOG_DIR: "log_dir",
}


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    if not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


def read_deploy_key(*, config_root: Path, key: str) -> str:
    return read_dotenv_key(dotenv_path=config_root / DEPLOY_DOTENV, key=key)


def read_deploy_secret_key(*, config_root: Path, key: str) -> str:
    return read_dotenv_key(dotenv_path=config_root / DEPLOY_SECRETS_DOTENV, key=key)


def resolve_value(
    spec: EnvKeySpec,
    *,
    cli_value: object,
    config_root: Path,
    prompt_fn: PromptFn | None,
    secret_prompt_fn: PromptFn | None,
) -> str:
    key = spec.key.value
    value = str(cli_value or "").strip()
    if not value:
        value = str(os.getenv(key) or "").strip()
    if not value:
        if isinstance(spec.key, SecretsEnum):
            value = read_deploy_secret_key(config_root=config_root, key=key)
        else:
            value = read_deploy_key(config_root=config_root, key=key)
    if not value and EnvTarget.PROMPT in spec.targets:
        ask = secret_prompt_fn if isinstance(spec.key, SecretsEnum) else prompt_fn
        if ask is not None:
            value = str(ask(f"{spec.prompt}: ") or "").strip()
    return value


def collect_settings(
    args: argparse.Namespace,
    *,
    config_root: Path,
    keys: Iterable[VarsEnum | SecretsEnum] | None = None,
    prompt_fn: PromptFn | None = input,
    secret_prompt_fn: PromptFn | None = getpass.getpass,
    context: str = "deploy parameters",
) -> dict[str, str]:
    """Resolve, default and validate the selected keys (all keys by default).

    Raises `EnvValidationError` listing every problem found.
    """
    selected = list(keys) if keys is not None else [spec.key for spec in DEPLOY_SCHEMA]
    schema = [spec for spec in DEPLOY_SCHEMA if spec.key in selected]

    kv: dict[str, str] = {}
    for spec in schema:
        dest = CLI_DESTS.get(spec.key) if isinstance(spec.key, VarsEnum) else None
        kv[spec.key.value] = resolve_value(
            spec,
            cli_value=getattr(args, dest, None) if dest else None,
            config_root=config_root,
            prompt_fn=prompt_fn,
            secret_prompt_fn=secret_prompt_fn,
        )

    kv = apply_defaults(schema, kv)
    validate_required(schema, kv, context=context)
    validate_field_rules(kv, context=context, only=selected)
    return kv


def collect_connection_settings(
    args: argparse.Namespace,
    *,
    config_root: Path,
    prompt_fn: PromptFn | None = input,
) -> dict[str, str]:
    """Connection keys (prompted) plus every non-prompted key, so site names and dirs still resolve."""
    unprompted = [spec.key for spec in DEPLOY_SCHEMA if EnvTarget.PROMPT not in spec.targets]
    return collect_settings(
        args,
        config_root=config_root,
        keys=[*CONNECTION_KEYS, *unprompted],
        prompt_fn=prompt_fn,
        secret_prompt_fn=None,
        context="cleanup connection parameters",
    )


def params_from_settings(
    kv: Mapping[str, str],
    *,
    repo_dir: Path = Path("."),
    args: argparse.Namespace | None = None,
) -> DeployParams:
    """Build `DeployParams` from validated settings; keys absent from kv fall back to schema defaults."""
    merged = apply_defaults(list(DEPLOY_SCHEMA), dict(kv))

    def get(key: VarsEnum | SecretsEnum) -> str:
        return str(merged.get(key.value) or "").strip()

    app_port = get(VarsEnum.DEPLOY_APP_PORT)
    host_port = get(VarsEnum.DEPLOY_HOST_PORT) or app_port

    use_sudo = truthy(get(VarsEnum.DEPLOY_USE_SUDO))
    verify = truthy(get(VarsEnum.DEPLOY_VERIFY))
    if args is not None:
        if getattr(args, "no_sudo", False):
            use_sudo = False
        if getattr(args, "skip_verify", False):
            verify = False

    extra: dict[str, object] = {}
    if app_port:
        extra["container_port"] = int(app_port)
    if host_port:
        extra["host_port"] = int(host_port)

    return DeployParams(
        ssh_user=get(VarsEnum.DEPLOY_SSH_USER),
        ssh_host=get(VarsEnum.DEPLOY_SSH_HOST),
        ssh_key=Path(get(VarsEnum.DEPLOY_SSH_KEY)).expanduser(),
        repo_dir=repo_dir,
        git_url=get(VarsEnum.DEPLOY_GIT_URL),
        git_token=get(SecretsEnum.DEPLOY_GIT_TOKEN),
        branch=get(VarsEnum.DEPLOY_GIT_BRANCH) or "main",
        container_name=get(VarsEnum.DEPLOY_CONTAINER_NAME),
        image_name=get(VarsEnum.DEPLOY_IMAGE_NAME),
        server_name=get(VarsEnum.DEPLOY_SERVER_NAME),
        proxy_site=get(VarsEnum.DEPLOY_PROXY_SITE),
        remote_dir=get(VarsEnum.DEPLOY_REMOTE_DIR),
        dockerfile=get(VarsEnum.DEPLOY_DOCKERFILE),
        use_sudo=use_sudo,
        verify=verify,
        log_dir=Path(get(VarsEnum.DEPLOY_LOG_DIR) or "."),
        **extra,
    )
