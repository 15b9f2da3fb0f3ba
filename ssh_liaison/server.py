import json
import shlex
from typing import Any, Callable, Dict, Optional
from ssh_liaison.config import DEFAULT_PORT, DEFAULT_READ_LOG_LINES, MAX_READ_LOG_LINES
from ssh_liaison.errors import InvalidParams, SSHLiaisonError
from ssh_liaison.hosts import resolve_alias
from ssh_liaison.models import ConnectionParams
from ssh_liaison.utils import clamp_int, log_debug, log_error

SERVER_NAME = "ssh-liaison-mcp"
SERVER_VERSION = "0.3.0"
PROTOCOL_VERSION = "2024-11-05"


def _require_str(args: Dict[str, Any], name: str) -> str:
    value = args.get(name)
    if value is None or not str(value).strip():
        raise InvalidParams(f"'{name}' is required")
    return str(value).strip()


def _optional_str(args: Dict[str, Any], name: str) -> Optional[str]:
    value = args.get(name)
    if value is None or not str(value).strip():
        return None
    return str(value)


def _port(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_PORT
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidParams(f"port must be a number, got {value!r}")
    if not 0 < port < 65536:
        raise InvalidParams(f"port out of range: {port}")
    return port


def _timeout(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidParams(f"timeout must be a number, got {value!r}")


def connection_params_supplier(args: Dict[str, Any], manager) -> Callable[[], ConnectionParams]:
    """Build the lazy parameter source for ``connect``.

    Direct fields win when ``hostname`` is present; otherwise ``host`` is
    looked up as an alias in the ssh client config. Nothing is resolved until
    the registry actually needs to open a connection.
    """
    host = _require_str(args, "host")
    hostname = _optional_str(args, "hostname")
    if hostname is None:
        config_path = manager.settings.SSH_CONFIG_PATH
        return lambda: resolve_alias(host, config_path)

    user = _require_str(args, "user")
    params = ConnectionParams(
        host_id=host,
        hostname=hostname.strip(),
        user=user,
        port=_port(args.get("port")),
        identity_file=_optional_str(args, "identity_file"),
        password=_optional_str(args, "password"),
    )
    return lambda: params


def connect_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    host = _require_str(args, "host")
    supplier = connection_params_supplier(args, manager)
    session, created = manager.get_or_create(host, supplier)
    if created:
        message = f"Connected to {host}"
    else:
        message = f"Already connected to {host}, reusing session"
    return {
        "success": True,
        "connected": True,
        "host": host,
        "created": created,
        "dialect": session.dialect.name if session.dialect else None,
        "message": message,
    }


def run_command_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    host = _require_str(args, "host")
    command = args.get("command")
    if command is None or not str(command).strip():
        raise InvalidParams("'command' is required")
    result = manager.execute(
        host,
        str(command),
        timeout=_timeout(args.get("timeout")),
        sudo_password=_optional_str(args, "sudo_password"),
    )
    payload = {"success": True}
    payload.update(result.as_dict())
    return payload


def quote_remote_path(path: str) -> str:
    # Keep a leading ~ outside the quotes so the remote shell still expands it.
    if path == "~":
        return "~"
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def read_log_command(file_path: str, lines: int) -> str:
    return f"tail -n {lines} {quote_remote_path(file_path)}"


def read_log_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    host = _require_str(args, "host")
    file_path = _require_str(args, "file_path")
    lines = clamp_int(args.get("lines", DEFAULT_READ_LOG_LINES), DEFAULT_READ_LOG_LINES, 1, MAX_READ_LOG_LINES)
    result = manager.execute(host, read_log_command(file_path, lines), timeout=_timeout(args.get("timeout")))
    payload = {"success": True, "file_path": file_path, "lines": lines}
    payload.update(result.as_dict())
    return payload


def disconnect_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    host = _require_str(args, "host")
    closed = manager.disconnect(host)
    return {
        "success": True,
        "host": host,
        "disconnected": closed,
        "message": f"Disconnected from {host}" if closed else f"No open session for {host}",
    }


def list_connections_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    rows = manager.list_connections()
    return {"success": True, "count": len(rows), "connections": rows}


TOOL_DISPATCH: Dict[str, Callable[[Dict[str, Any], Any], Dict[str, Any]]] = {
    "ssh_connect": connect_dispatch,
    "ssh_run_command": run_command_dispatch,
    "ssh_read_log": read_log_dispatch,
    "ssh_disconnect": disconnect_dispatch,
    "ssh_list_connections": list_connections_dispatch,
}


def call_tool(tool_name: str, args: Dict[str, Any], manager) -> Dict[str, Any]:
    """Run one tool and always return a result dict (errors included)."""
    dispatch = TOOL_DISPATCH.get(tool_name)
    if dispatch is None:
        raise KeyError(tool_name)
    try:
        return dispatch(args, manager)
    except SSHLiaisonError as exc:
        log_debug(f"{tool_name} failed: {exc.kind}: {exc.message}")
        return exc.to_result()


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list() -> Dict[str, Any]:
    host_param = {
        "type": "string",
        "description": "Host identifier. For ssh_connect without hostname this is a Host alias from ~/.ssh/config.",
    }
    timeout_param = {
        "type": "number",
        "description": "Optional seconds to wait for the command to finish (default 30, max 3600).",
    }
    tools = [
        {
            "name": "ssh_connect",
            "description": (
                "Open (or reuse) a persistent interactive shell on a host. "
                "Either pass a Host alias from ~/.ssh/config as 'host', or give 'hostname' and 'user' "
                "for a direct connection. Keys (agent, identity file, default keys) are tried before the password."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": host_param,
                    "hostname": {"type": "string", "description": "Direct connection: hostname or IP."},
                    "user": {"type": "string", "description": "Direct connection: login user."},
                    "port": {"type": "number", "description": "Direct connection: port (default 22)."},
                    "password": {"type": "string", "description": "Optional password, tried after all keys."},
                    "identity_file": {"type": "string", "description": "Optional private key path."},
                },
                "required": ["host"],
            },
        },
        {
            "name": "ssh_run_command",
            "description": (
                "Run a command in the host's persistent shell. Working directory and exported "
                "variables carry over between calls. Returns combined stdout/stderr and the exit status. "
                "On timeout Ctrl+C is sent and the session stays usable."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": host_param,
                    "command": {"type": "string", "description": "Shell command text (may span several lines)."},
                    "sudo_password": {"type": "string", "description": "Optional password sent once if sudo prompts for it."},
                    "timeout": timeout_param,
                },
                "required": ["host", "command"],
            },
        },
        {
            "name": "ssh_read_log",
            "description": "Show the last N lines of a file on the host (runs tail in the persistent shell).",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": host_param,
                    "file_path": {"type": "string", "description": "Remote file path, ~ allowed."},
                    "lines": {"type": "number", "description": "Number of lines (default 100, max 10000)."},
                    "timeout": timeout_param,
                },
                "required": ["host", "file_path"],
            },
        },
        {
            "name": "ssh_disconnect",
            "description": "Close the shell session for a host.",
            "inputSchema": {
                "type": "object",
                "properties": {"host": host_param},
                "required": ["host"],
            },
        },
        {
            "name": "ssh_list_connections",
            "description": "List open sessions with state (alive|busy|dead), shell dialect and last command.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "result": {"tools": tools}}


def handle_request(request: Dict[str, Any], manager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id")

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if isinstance(method, str) and method.startswith("notifications/"):
        return None
    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        if tool_name not in TOOL_DISPATCH:
            return make_error(req_id, -32601, f"Unknown tool: {tool_name}")
        try:
            result = call_tool(str(tool_name), args, manager)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            result = {"success": False, "error": str(exc), "error_kind": "Internal"}
        return make_response(req_id, result, is_error=not result.get("success", False))

    return make_error(req_id, -32601, f"Unknown method: {method}")
