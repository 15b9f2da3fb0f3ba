"""Interactive terminal on top of the same session registry the MCP server uses.

    connect <alias>
    connect <user> <hostname> [password] [port]
    disconnect
    exit | quit

Any other line runs in the current host's shell.
"""

import sys
from typing import Any, Dict, Optional, TextIO

from ssh_liaison.server import call_tool
from ssh_liaison.utils import log_error

USAGE = "Usage: connect <host-alias>\n   or: connect <user> <hostname> [password] [port]"


class CliShell:
    def __init__(self, manager, stdin: TextIO = None, stdout: TextIO = None, stderr: TextIO = None):
        self.manager = manager
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.current_host: Optional[str] = None

    def _err(self, message: str) -> None:
        print(message, file=self.stderr, flush=True)

    def _prompt(self) -> str:
        return f"[{self.current_host}]> " if self.current_host else "ssh> "

    def connect(self, args: Dict[str, Any]) -> bool:
        if self.current_host and self.current_host != args["host"]:
            self.manager.disconnect(self.current_host)
            self.current_host = None
        result = call_tool("ssh_connect", args, self.manager)
        if not result.get("success"):
            self._err(f"Connection failed ({result.get('error_kind')}): {result.get('error')}")
            return False
        self.current_host = args["host"]
        self._err(result["message"])
        return True

    def connect_words(self, words) -> bool:
        if not words:
            self._err(USAGE)
            return False
        if len(words) == 1:
            return self.connect({"host": words[0]})
        user, hostname = words[0], words[1]
        args = {"host": f"{user}_{hostname}", "user": user, "hostname": hostname}
        if len(words) > 2:
            args["password"] = words[2]
        if len(words) > 3:
            args["port"] = words[3]
        return self.connect(args)

    def run(self, command: str) -> None:
        if not self.current_host:
            self._err("Not connected to any host. Use 'connect <host-alias>' to connect.")
            return
        result = call_tool("ssh_run_command", {"host": self.current_host, "command": command}, self.manager)
        if not result.get("success"):
            if result.get("partial_output"):
                print(result["partial_output"], file=self.stdout, flush=True)
            self._err(f"{result.get('error_kind')}: {result.get('error')}")
            if result.get("error_kind") in ("SessionLost", "SessionNotFound"):
                self.current_host = None
            return
        output = result.get("stdout_and_stderr", "")
        if output.strip():
            print(output, file=self.stdout, flush=True)
        if result.get("exit_status"):
            self._err(f"[exit {result['exit_status']}]")

    def handle_line(self, line: str) -> bool:
        """Process one input line; return False when the loop should stop."""
        command = line.strip()
        if not command:
            return True
        if command in ("exit", "quit"):
            if self.current_host:
                self.manager.disconnect(self.current_host)
                self.current_host = None
            return False
        if command == "disconnect":
            if self.current_host:
                self.manager.disconnect(self.current_host)
                self._err(f"Disconnected from {self.current_host}")
                self.current_host = None
            else:
                self._err("Not connected to any host")
            return True
        if command == "connect" or command.startswith("connect "):
            self.connect_words(command.split()[1:])
            return True
        self.run(command)
        return True

    def loop(self) -> None:
        while True:
            self.stdout.write(self._prompt())
            self.stdout.flush()
            line = self.stdin.readline()
            if not line:
                break
            if not self.handle_line(line):
                break


def run_cli(manager, args) -> None:
    shell = CliShell(manager)
    if args.hostname and args.user:
        direct = {"host": args.host or "direct", "user": args.user, "hostname": args.hostname}
        if args.password:
            direct["password"] = args.password
        if args.port:
            direct["port"] = args.port
        if not shell.connect(direct):
            log_error(f"could not connect to {args.user}@{args.hostname}")
            return
    elif args.host:
        if not shell.connect({"host": args.host}):
            log_error(f"could not connect to '{args.host}'")
            return
    shell.loop()
