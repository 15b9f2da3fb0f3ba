import os
import socket
from typing import Optional

import paramiko

from ssh_liaison.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, PTY_HEIGHT, PTY_TERM, PTY_WIDTH,
    ServerConfig, config,
)
from ssh_liaison.errors import ConnectError
from ssh_liaison.models import ConnectionParams
from ssh_liaison.utils import log_debug, log_error


class ChannelClosed(Exception):
    pass


class ShellChannel:
    """Byte-level view of one interactive shell channel.

    ``recv_available`` never blocks: it returns whatever is buffered (possibly
    ``b""``) and raises ``ChannelClosed`` once the remote side has gone away.
    """

    def __init__(self, transport: paramiko.Transport, channel: paramiko.Channel):
        self.transport = transport
        self.channel = channel

    def recv_available(self, max_bytes: int = BUFFER_SIZE) -> bytes:
        if self.channel.recv_ready():
            data = self.channel.recv(max_bytes)
            if not data:
                raise ChannelClosed("remote shell closed the channel")
            return data
        if not self.is_open():
            raise ChannelClosed(self._closed_reason())
        return b""

    def send(self, data: str) -> None:
        if not self.is_open():
            raise ChannelClosed(self._closed_reason())
        try:
            self.channel.sendall(data.encode("utf-8"))
        except (OSError, EOFError, paramiko.SSHException) as exc:
            raise ChannelClosed(f"send failed: {exc}")

    def is_open(self) -> bool:
        if self.channel.closed or self.channel.exit_status_ready():
            return False
        return bool(self.transport and self.transport.is_active())

    def _closed_reason(self) -> str:
        if not self.transport or not self.transport.is_active():
            return "transport disconnected"
        if self.channel.exit_status_ready():
            return f"remote shell exited with status {self.channel.recv_exit_status()}"
        return "channel closed"

    def close(self) -> None:
        try:
            self.channel.close()
        except Exception as exc:
            log_debug(f"channel close: {exc}")
        try:
            self.transport.close()
        except Exception as exc:
            log_debug(f"transport close: {exc}")


def _open_socket(params: ConnectionParams):
    if params.proxy_command:
        log_debug(f"{params.host_id}: connecting through ProxyCommand")
        try:
            return paramiko.ProxyCommand(params.proxy_command)
        except (OSError, paramiko.SSHException) as exc:
            raise ConnectError("unreachable", f"ProxyCommand for '{params.host_id}' failed: {exc}")
    try:
        return socket.create_connection((params.hostname, params.port), timeout=CONNECT_TIMEOUT)
    except socket.gaierror as exc:
        raise ConnectError("unreachable", f"Failed to resolve hostname {params.hostname}: {exc}")
    except OSError as exc:
        raise ConnectError(
            "unreachable", f"Failed to connect to {params.hostname}:{params.port}: {exc}"
        )


def _host_key_name(params: ConnectionParams) -> str:
    if params.port == 22:
        return params.hostname
    return f"[{params.hostname}]:{params.port}"


def _verify_host_key(transport: paramiko.Transport, params: ConnectionParams, settings: ServerConfig) -> None:
    if not settings.VERIFY_HOST_KEY:
        return
    server_key = transport.get_remote_server_key()
    known = paramiko.HostKeys()
    if os.path.isfile(settings.KNOWN_HOSTS_PATH):
        try:
            known.load(settings.KNOWN_HOSTS_PATH)
        except (OSError, paramiko.SSHException) as exc:
            log_error(f"could not read {settings.KNOWN_HOSTS_PATH}: {exc}")

    name = _host_key_name(params)
    entry = known.lookup(name)
    if entry is None or server_key.get_name() not in entry:
        raise ConnectError(
            "host_key",
            f"Host key for {name} ({server_key.get_name()}) is not in {settings.KNOWN_HOSTS_PATH}. "
            "Add it with ssh-keyscan or disable verification with --no-verify-host.",
        )
    if entry[server_key.get_name()] != server_key:
        raise ConnectError("host_key", f"Host key for {name} does not match known_hosts entry")


def open_transport(params: ConnectionParams, settings: Optional[ServerConfig] = None) -> paramiko.Transport:
    """Open the network connection and finish the SSH handshake (no auth yet)."""
    settings = settings or config
    sock = _open_socket(params)
    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=CONNECT_TIMEOUT)
    except (paramiko.SSHException, EOFError, OSError) as exc:
        transport.close()
        raise ConnectError("handshake", f"SSH handshake with {params.hostname}:{params.port} failed: {exc}")

    try:
        _verify_host_key(transport, params, settings)
    except ConnectError:
        transport.close()
        raise

    transport.set_keepalive(KEEPALIVE_INTERVAL)
    log_debug(f"{params.host_id}: handshake ok with {params.hostname}:{params.port}")
    return transport


def open_shell(transport: paramiko.Transport, params: ConnectionParams) -> ShellChannel:
    """Start a login shell on a pseudo-terminal over an authenticated transport."""
    try:
        channel = transport.open_session(timeout=CONNECT_TIMEOUT)
        channel.get_pty(term=PTY_TERM, width=PTY_WIDTH, height=PTY_HEIGHT)
        channel.invoke_shell()
    except (paramiko.SSHException, EOFError, OSError) as exc:
        transport.close()
        raise ConnectError("shell", f"Failed to open shell on '{params.host_id}': {exc}")
    return ShellChannel(transport, channel)
