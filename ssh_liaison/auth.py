"""Credential fallback for new connections.

Credential sources are laid out as an ordered list of ``AuthAttempt``
objects and tried one after another on the same transport:

1. keys offered by the ssh-agent
2. the explicit identity file (config alias or direct request)
3. default key files in the ssh directory: ed25519, rsa, ecdsa, dsa
4. the password, if one was supplied

A rejected credential just moves on to the next attempt. Losing the
connection is different: the transport is re-opened once (servers drop
clients after MaxAuthTries) and if that fails the whole negotiation aborts
with ``ConnectError`` without touching the remaining credentials.
"""

import os
import stat
from dataclasses import dataclass
from typing import Callable, List, Optional

import paramiko

from ssh_liaison.config import DEFAULT_KEY_FILES, ServerConfig, config
from ssh_liaison.errors import AuthExhausted
from ssh_liaison.models import ConnectionParams
from ssh_liaison.transport import open_transport
from ssh_liaison.utils import log_debug, log_error

ACCEPTED = "accepted"
REJECTED = "rejected"
SKIPPED = "skipped"


class ConnectionDropped(Exception):
    pass


@dataclass
class AuthAttempt:
    label: str
    method: str
    run: Callable[[paramiko.Transport, str], str]


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    return paramiko.PKey.from_path(path, passphrase=passphrase)


def _warn_insecure_permissions(path: str) -> None:
    try:
        mode = os.stat(path).st_mode
    except OSError:
        return
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        log_error(
            f"identity file {path} has insecure permissions "
            f"({stat.S_IMODE(mode):o}), should be 600"
        )


def _try_auth(transport: paramiko.Transport, call: Callable[[], object]) -> str:
    try:
        call()
    except paramiko.AuthenticationException as exc:
        log_debug(f"credential rejected: {exc}")
        return REJECTED
    except (paramiko.SSHException, EOFError, OSError) as exc:
        if not transport.is_active():
            raise ConnectionDropped(str(exc))
        log_debug(f"credential failed: {exc}")
        return REJECTED
    return ACCEPTED if transport.is_authenticated() else REJECTED


class AuthNegotiator:
    def __init__(
        self,
        settings: Optional[ServerConfig] = None,
        connector: Optional[Callable[[ConnectionParams], paramiko.Transport]] = None,
        agent_factory: Callable[[], object] = paramiko.Agent,
        key_loader: Callable[[str], paramiko.PKey] = load_private_key,
    ):
        self.settings = settings or config
        self.connector = connector or (lambda params: open_transport(params, self.settings))
        self.agent_factory = agent_factory
        self.key_loader = key_loader

    # ========= Attempt builders =========

    def _agent_attempt(self) -> AuthAttempt:
        def run(transport: paramiko.Transport, user: str) -> str:
            try:
                agent = self.agent_factory()
                keys = list(agent.get_keys())
            except (paramiko.SSHException, OSError) as exc:
                log_debug(f"ssh-agent unavailable: {exc}")
                return SKIPPED
            if not keys:
                log_debug("ssh-agent offers no keys")
                return SKIPPED
            for key in keys:
                outcome = _try_auth(transport, lambda: transport.auth_publickey(user, key))
                if outcome == ACCEPTED:
                    return ACCEPTED
            return REJECTED

        return AuthAttempt(label="agent", method="agent", run=run)

    def _key_file_attempt(self, path: str, method: str, required: bool) -> AuthAttempt:
        def run(transport: paramiko.Transport, user: str) -> str:
            if not os.path.isfile(path):
                if required:
                    log_error(f"identity file not found: {path}")
                else:
                    log_debug(f"key file not found: {path}")
                return SKIPPED
            _warn_insecure_permissions(path)
            try:
                key = self.key_loader(path)
            except paramiko.PasswordRequiredException:
                log_debug(f"key file {path} is encrypted, skipping")
                return SKIPPED
            except (paramiko.SSHException, OSError, ValueError) as exc:
                log_debug(f"key file {path} unusable: {exc}")
                return SKIPPED
            return _try_auth(transport, lambda: transport.auth_publickey(user, key))

        return AuthAttempt(label=path, method=method, run=run)

    def _password_attempt(self, password: str) -> AuthAttempt:
        def run(transport: paramiko.Transport, user: str) -> str:
            try:
                # fallback=False: keyboard-interactive is handled below, once
                transport.auth_password(user, password, fallback=False)
            except paramiko.BadAuthenticationType as exc:
                if "keyboard-interactive" not in (exc.allowed_types or []):
                    return REJECTED

                def handler(title, instructions, prompts):
                    return [password for _prompt, _echo in prompts]

                return _try_auth(transport, lambda: transport.auth_interactive(user, handler))
            except paramiko.AuthenticationException:
                return REJECTED
            except (paramiko.SSHException, EOFError, OSError) as exc:
                if not transport.is_active():
                    raise ConnectionDropped(str(exc))
                return REJECTED
            return ACCEPTED if transport.is_authenticated() else REJECTED

        # The label is shown in errors, so it must not carry the secret.
        return AuthAttempt(label="password", method="password", run=run)

    def plan(self, params: ConnectionParams) -> List[AuthAttempt]:
        attempts: List[AuthAttempt] = []
        if self.settings.USE_AGENT and not params.identities_only:
            attempts.append(self._agent_attempt())
        if params.identity_file:
            attempts.append(
                self._key_file_attempt(os.path.expanduser(params.identity_file), "identity_file", True)
            )
        if not params.identities_only:
            seen = {os.path.expanduser(params.identity_file)} if params.identity_file else set()
            for name in DEFAULT_KEY_FILES:
                path = os.path.join(self.settings.SSH_DIR, name)
                if path not in seen:
                    attempts.append(self._key_file_attempt(path, "default_key", False))
        if params.password:
            attempts.append(self._password_attempt(params.password))
        return attempts

    # ========= Negotiation =========

    def negotiate(self, params: ConnectionParams) -> paramiko.Transport:
        """Return an authenticated transport or raise AuthExhausted/ConnectError."""
        transport = self.connector(params)
        tried: List[str] = []
        password_attempted = False

        for attempt in self.plan(params):
            if attempt.method == "password":
                password_attempted = True
            try:
                outcome = attempt.run(transport, params.user)
            except ConnectionDropped as exc:
                log_debug(f"{params.host_id}: connection dropped during {attempt.label}: {exc}")
                transport.close()
                # Raises ConnectError when the host is gone; remaining credentials are not tried.
                transport = self.connector(params)
                outcome = REJECTED

            if outcome == SKIPPED:
                continue
            tried.append(attempt.label)
            if outcome == ACCEPTED:
                log_debug(f"{params.host_id}: authenticated via {attempt.method}")
                return transport

        transport.close()
        log_error(
            f"{params.host_id}: authentication exhausted for {params.user}@{params.hostname} "
            f"(tried={len(tried)}, password_attempted={password_attempted})"
        )
        raise AuthExhausted(params.user, params.hostname, tried, password_attempted)
