"""Locate the build descriptor of the application checkout.

A plain `Dockerfile` at the repo root wins. Otherwise a compose file may
point at the build context through a service's `build` section.
"""

import os
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# Regex to match ${VAR:-default} or ${VAR}
INTERPOLATION_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


class BuildDescriptorError(FileNotFoundError):
    pass


@dataclass(frozen=True)
class BuildDescriptor:
    context: str  # relative to the repo root, "." for the root itself
    dockerfile: str  # relative to the context
    source: str  # file the descriptor was found through

    def remote_build_path(self, remote_dir: str) -> str:
        return posixpath.normpath(posixpath.join(remote_dir, self.context))


def interpolate_value(value: Any) -> Any:
    """Expand ${VAR} and ${VAR:-default} from the process environment."""
    if not isinstance(value, str):
        return value

    def replace_match(match):
        env_val = os.getenv(match.group(1))
        if env_val is not None:
            return env_val
        return match.group(2) if match.group(2) is not None else ""

    return INTERPOLATION_PATTERN.sub(replace_match, value)


def interpolate_dict(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: interpolate_dict(v) for k, v in data.items()}
    if isinstance(data, list):
        return [interpolate_dict(v) for v in data]
    return interpolate_value(data)


def load_docker_compose_config(compose_path: Path) -> Dict[str, Any]:
    try:
        with open(compose_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise RuntimeError(f"Failed to parse {compose_path.name}: {e}") from e
    if not isinstance(raw_config, dict):
        raise RuntimeError(f"{compose_path.name} is not a mapping")
    return interpolate_dict(raw_config)


def get_build_context(service_config: Dict[str, Any]) -> Optional[str]:
    build = service_config.get("build")
    if not build:
        return None
    if isinstance(build, str):
        return build
    if isinstance(build, dict):
        return build.get("context") or "."
    return None


def get_dockerfile(service_config: Dict[str, Any]) -> str:
    build = service_config.get("build")
    if isinstance(build, dict) and build.get("dockerfile"):
        return str(build["dockerfile"])
    return "Dockerfile"


def find_build_service(compose_config: Dict[str, Any]) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Service to deploy: the one tagged `x-deploy-role: app`, else the first with a build section."""
    services = compose_config.get("services") or {}
    if not isinstance(services, dict):
        return None
    candidates = [
        (name, cfg) for name, cfg in services.items()
        if isinstance(cfg, dict) and get_build_context(cfg) is not None
    ]
    for name, cfg in candidates:
        if cfg.get("x-deploy-role") == "app":
            return name, cfg
    return candidates[0] if candidates else None


def _normalize_context(context: str) -> str:
    normalized = posixpath.normpath(context.replace("\\", "/"))
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise BuildDescriptorError(f"Build context {context!r} is outside the repository")
    return normalized


def resolve_build_descriptor(repo_dir: Path, dockerfile: str = "Dockerfile") -> BuildDescriptor:
    if (repo_dir / dockerfile).is_file():
        return BuildDescriptor(context=".", dockerfile=dockerfile, source=dockerfile)

    for compose_name in COMPOSE_FILE_NAMES:
        compose_path = repo_dir / compose_name
        if not compose_path.is_file():
            continue
        found = find_build_service(load_docker_compose_config(compose_path))
        if found is None:
            continue
        _, service_config = found
        context = _normalize_context(str(get_build_context(service_config)))
        service_dockerfile = get_dockerfile(service_config)
        if (repo_dir / context / service_dockerfile).is_file():
            return BuildDescriptor(context=context, dockerfile=service_dockerfile, source=compose_name)

    raise BuildDescriptorError(
        f"No {dockerfile} or docker-compose.yml with a build section found in {repo_dir}"
    )
