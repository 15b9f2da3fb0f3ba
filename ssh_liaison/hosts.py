"""Resolve host aliases from the local OpenSSH client configuration.

Parsing itself is delegated to ``paramiko.SSHConfig``. Only ``Include``
directives are expanded here, since paramiko does not follow them.
"""

import fnmatch
import glob
import os
from typing import List, Optional, Set

import paramiko

from ssh_liaison.config import DEFAULT_PORT, config
from ssh_liaison.errors import ConfigNotFound
from ssh_liaison.models import ConnectionParams
from ssh_liaison.utils import log_debug, to_bool


def _expand_include_paths(value: str, base_dir: str) -> List[str]:
    paths: List[str] = []
    for token in value.split():
        token = os.path.expanduser(token.strip("\"'"))
        if not os.path.isabs(token):
            token = os.path.join(base_dir, token)
        paths.extend(sorted(glob.glob(token)))
    return paths


def read_config_text(path: str, base_dir: Optional[str] = None, visited: Optional[Set[str]] = None) -> str:
    """Return the config file contents with ``Include`` lines inlined."""
    visited = visited if visited is not None else set()
    real = os.path.realpath(path)
    if real in visited or not os.path.isfile(real):
        return ""
    visited.add(real)
    base_dir = base_dir or os.path.dirname(real)

    with open(real, "r", encoding="utf-8", errors="replace") as handle:
        lines = handle.read().splitlines()

    out: List[str] = []
    for line in lines:
        stripped = line.strip()
        if stripped.lower().startswith("include ") or stripped.lower().startswith("include\t"):
            for included in _expand_include_paths(stripped[8:], base_dir):
                out.append(read_config_text(included, base_dir, visited))
            continue
        out.append(line)
    return "\n".join(out) + "\n"


def load_ssh_config(path: Optional[str] = None) -> paramiko.SSHConfig:
    path = path or config.SSH_CONFIG_PATH
    if not os.path.isfile(path):
        raise ConfigNotFound(f"SSH config file not found at {path}")
    text = read_config_text(path)
    log_debug(f"parsed ssh config {path} ({len(text)} chars)")
    return paramiko.SSHConfig.from_text(text)


def _alias_matches(ssh_config: paramiko.SSHConfig, alias: str) -> bool:
    for pattern in ssh_config.get_hostnames():
        if pattern == "*" or pattern.startswith("!"):
            continue
        if fnmatch.fnmatchcase(alias, pattern):
            return True
    return False


def resolve_alias(alias: str, path: Optional[str] = None) -> ConnectionParams:
    if not alias or not alias.strip():
        raise ConfigNotFound("host alias is required")
    ssh_config = load_ssh_config(path)
    if not _alias_matches(ssh_config, alias):
        raise ConfigNotFound(f"Host '{alias}' not found in SSH config")

    entry = ssh_config.lookup(alias)
    hostname = entry.get("hostname") or alias
    user = entry.get("user")
    if not user:
        raise ConfigNotFound(f"User not specified for host '{alias}'")

    port_raw = entry.get("port", DEFAULT_PORT)
    try:
        port = int(port_raw)
    except (TypeError, ValueError):
        raise ConfigNotFound(f"Invalid Port '{port_raw}' for host '{alias}'")

    identity_files = entry.get("identityfile") or []
    identity_file = os.path.expanduser(identity_files[0]) if identity_files else None

    return ConnectionParams(
        host_id=alias,
        hostname=hostname,
        user=user,
        port=port,
        identity_file=identity_file,
        identities_only=to_bool(entry.get("identitiesonly"), False),
        proxy_command=entry.get("proxycommand") or None,
    )
