import sys
import io
import json
import argparse
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional
from ssh_liaison.config import MAX_COMMAND_TIMEOUT, MIN_COMMAND_TIMEOUT, SHELL_DIALECTS, config
from ssh_liaison.utils import (
    clamp_float, log_error, resolve_runtime_paths, make_cache_dirs
)
from ssh_liaison.server import handle_request, make_error

# Bound at startup by _use_utf8_stdio(); remote output routinely carries
# characters the local console codepage cannot encode.
_stdin: Optional[io.TextIOWrapper] = None
_stdout: Optional[io.TextIOWrapper] = None
_stdout_lock = threading.Lock()


def _use_utf8_stdio() -> None:
    """Force UTF-8 I/O on the process stdin/stdout."""
    global _stdin, _stdout
    _stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    with _stdout_lock:
        try:
            _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            _stdout.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            # Fallback: escape all non-ASCII to guarantee safe output
            try:
                _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
                _stdout.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssh-liaison-mcp",
        description="Stateful SSH shell sessions for MCP clients (persistent cwd and env per host)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity (-vvv enables debug logs)")
    parser.add_argument("--ssh-config", help="ssh client config path (overrides SSH_LIAISON_SSH_CONFIG)")
    parser.add_argument("--verify-host", action="store_true", help="Verify host keys against known_hosts (default)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable host key verification")
    parser.add_argument("--timeout", type=float, help="Default command timeout in seconds")
    parser.add_argument("--shell", choices=SHELL_DIALECTS, help="Remote shell dialect (default: auto)")
    parser.add_argument("--path", help="Additional PATH to export in every shell")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")

    sub = parser.add_subparsers(dest="mode")
    sub.add_parser("serve", help="Serve MCP over stdio (default)")
    cli = sub.add_parser("cli", help="Interactive terminal")
    cli.add_argument("host", nargs="?", help="Host alias or identifier to connect to on start")
    cli.add_argument("--user", help="User for a direct connection")
    cli.add_argument("--hostname", help="Hostname or IP for a direct connection")
    cli.add_argument("--password", help="Password for a direct connection")
    cli.add_argument("--port", type=int, help="Port for a direct connection")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.verbose >= 3:
        config.DEBUG = True
    if args.ssh_config:
        config.SSH_CONFIG_PATH = args.ssh_config
    if args.timeout is not None:
        config.COMMAND_TIMEOUT = clamp_float(
            args.timeout, config.COMMAND_TIMEOUT, MIN_COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT
        )
    if args.shell:
        config.SHELL_DIALECT = args.shell
    if args.path:
        config.EXTRA_PATH = args.path

    # Handle verify host logic
    if args.no_verify_host:
        config.VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.VERIFY_HOST_KEY = True


def _request_id(line: str) -> Optional[Any]:
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    return payload.get("id") if isinstance(payload, dict) else None


def _serve_one(request: Dict[str, Any], line: str, manager, write: Callable[[dict], None]) -> None:
    try:
        response = handle_request(request, manager)
        if response is not None:
            write(response)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        # Always answer so the client doesn't hang
        write(make_error(_request_id(line), -32603, f"Internal error: {exc}"))


def serve(
    manager,
    lines: Optional[Iterable[str]] = None,
    write: Optional[Callable[[dict], None]] = None,
) -> List[threading.Thread]:
    """Read requests line by line and answer each on its own thread.

    A command stuck on one host only holds that host's session lock, so
    requests for every other host keep being served.
    """
    lines = _stdin if lines is None else lines
    write = write or _write_response
    workers: List[threading.Thread] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            write(make_error(None, -32700, f"Parse error: {exc}"))
            continue
        if not isinstance(request, dict):
            write(make_error(None, -32600, "Invalid request"))
            continue
        worker = threading.Thread(
            target=_serve_one, args=(request, line, manager, write), name="mcp-request", daemon=True
        )
        worker.start()
        workers = [w for w in workers if w.is_alive()]
        workers.append(worker)
    return workers


def main(argv=None) -> None:
    from ssh_liaison.ssh import SessionManager

    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    manager = SessionManager(config, config.CACHE_DIRS, config.PROJECT_TAG)
    manager.start_health_monitor()

    try:
        if args.mode == "cli":
            from ssh_liaison.cli import run_cli
            run_cli(manager, args)
        else:
            log_error(
                f"SSH liaison MCP started. ssh_config={config.SSH_CONFIG_PATH} "
                f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS['cache_root']} "
                f"verify_host={config.VERIFY_HOST_KEY} shell={config.SHELL_DIALECT}"
            )
            _use_utf8_stdio()
            serve(manager)
    except KeyboardInterrupt:
        pass
    finally:
        log_error("shutting down...")
        manager.close_all()


if __name__ == "__main__":
    main()
