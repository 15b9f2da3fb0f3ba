import os
import re
import codecs
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ssh_liaison.auth import AuthNegotiator
from ssh_liaison.config import (
    DIALECT_PROBE_TIMEOUT, HEALTH_CHECK_INTERVAL, MAX_COMMAND_TIMEOUT, MAX_OUTPUT_CHARS,
    MIN_COMMAND_TIMEOUT, PASSWORD_PROMPT, POLL_INTERVAL, SHELL_SETUP_TIMEOUT, STARTUP_SETTLE,
    SUDO_COMMAND, SUDO_PROMPT, ServerConfig, config,
)
from ssh_liaison.errors import (
    CommandTimeout, ConnectError, InvalidParams, SessionLost, SessionNotFound,
    SudoPasswordRequired,
)
from ssh_liaison.models import CommandResult, ConnectionParams
from ssh_liaison.transport import ChannelClosed, ShellChannel, open_shell
from ssh_liaison.utils import (
    clamp_float, clean_output, iso_now, json_line, log_debug, log_error, safe_name
)

SHELL_PROBE = re.compile(r"__SSHL_SHELL_([^\"\s]*)_END__")


# ========= Shell dialects =========
@dataclass(frozen=True)
class ShellDialect:
    name: str
    status_var: str
    setup: str
    path_template: str
    group_open: Optional[str] = None
    group_close: Optional[str] = None

    def _split(self, marker: str) -> Tuple[str, str]:
        cut = len(marker) // 2
        return marker[:cut], marker[cut:]

    def sentinel_statement(self, marker: str) -> str:
        # The marker is split in two quoted halves so the echoed input line
        # never contains it verbatim; only the shell's output does.
        head, tail = self._split(marker)
        return f'echo "{head}""{tail}:{self.status_var}"'

    def echo_fragment(self, marker: str) -> str:
        head, tail = self._split(marker)
        return f'{head}""{tail}'

    def wrap(self, command: str, marker: str) -> str:
        body = command.rstrip()
        statement = self.sentinel_statement(marker)
        # The sentinel always gets its own line so a trailing comment or an
        # unfinished separator in the body cannot swallow it. A group is read
        # whole before it runs, so line-editing echo precedes the output.
        if self.group_open:
            return f"{self.group_open}{body}\n{self.group_close}; {statement}\n"
        return f"{body}\n{statement}\n"

    def setup_line(self, extra_path: Optional[str] = None) -> str:
        line = self.setup
        if extra_path:
            line += "; " + self.path_template.format(path=extra_path)
        return line


POSIX = ShellDialect(
    name="posix",
    status_var="$?",
    setup=(
        "stty -echo 2>/dev/null; PS1=''; PS2=''; unset PROMPT_COMMAND 2>/dev/null; "
        "export PAGER=cat GIT_PAGER=cat SYSTEMD_PAGER=cat"
    ),
    path_template="export PATH={path}:$PATH",
    group_open="{ ",
    group_close="}",
)
FISH = ShellDialect(
    name="fish",
    status_var="$status",
    setup=(
        "stty -echo 2>/dev/null; function fish_prompt; end; function fish_right_prompt; end; "
        "set -gx PAGER cat; set -gx GIT_PAGER cat"
    ),
    path_template="set -gx PATH {path} $PATH",
    group_open="begin; ",
    group_close="end",
)
CSH = ShellDialect(
    name="csh",
    status_var="$status",
    setup=(
        "stty -echo >& /dev/null; unset edit; set prompt=''; set prompt2=''; "
        "setenv PAGER cat; setenv GIT_PAGER cat"
    ),
    path_template="setenv PATH {path}:$PATH",
)
DIALECTS: Dict[str, ShellDialect] = {d.name: d for d in (POSIX, FISH, CSH)}


def dialect_for_shell(shell_path: str) -> ShellDialect:
    name = os.path.basename(shell_path.strip()).lstrip("-")
    if name == "fish":
        return FISH
    if name in ("csh", "tcsh"):
        return CSH
    return POSIX


def make_marker(sequence: int) -> str:
    return f"__SSHL_{sequence}_{secrets.token_hex(8)}__"


def _awaits_sudo_password(command: str, tail: str) -> bool:
    if SUDO_PROMPT.search(tail):
        return True
    return bool(SUDO_COMMAND.search(command)) and bool(PASSWORD_PROMPT.search(tail))


# ========= Command invocation =========
@dataclass
class CommandInvocation:
    """Output capture for one command, completed when its sentinel shows up.

    Only a short window of not-yet-matched text is rescanned per chunk; the
    rest is committed to ``captured``, which keeps at most
    ``max_output_chars`` (oldest text is dropped first).
    """

    sequence: int
    command: str
    marker: str
    max_output_chars: int = MAX_OUTPUT_CHARS
    started_at: float = field(default_factory=time.monotonic)

    completed: bool = False
    exit_status: Optional[int] = None
    truncated: bool = False
    captured: str = ""
    pending: str = ""

    def __post_init__(self):
        self._pattern = re.compile(re.escape(self.marker) + r":(-?\d+)\r?\n")
        self._window = len(self.marker) + 24
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _commit(self, text: str) -> None:
        if not text:
            return
        self.captured += text
        overflow = len(self.captured) - self.max_output_chars
        if overflow > 0:
            self.captured = self.captured[overflow:]
            self.truncated = True

    def feed(self, data: bytes) -> bool:
        if self.completed:
            return True
        text = self._decoder.decode(data)
        if not text:
            return False
        self.pending += text
        match = self._pattern.search(self.pending)
        if match:
            self._commit(self.pending[:match.start()])
            self.pending = ""
            self.exit_status = int(match.group(1))
            self.completed = True
            return True
        keep_from = len(self.pending) - self._window
        if keep_from > 0:
            self._commit(self.pending[:keep_from])
            self.pending = self.pending[keep_from:]
        return False

    @property
    def output(self) -> str:
        if self.completed:
            return self.captured
        return self.captured + self.pending

    def tail(self, size: int = 256) -> str:
        return (self.captured[-size:] + self.pending)[-size:]


# ========= Session =========
class SSHSession:
    def __init__(
        self,
        host_id: str,
        channel: ShellChannel,
        params: Optional[ConnectionParams] = None,
        settings: Optional[ServerConfig] = None,
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        startup_settle: float = STARTUP_SETTLE,
    ):
        self.host_id = host_id
        self.channel = channel
        self.params = params
        self.settings = settings or config
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.startup_settle = startup_settle

        self.state = "alive"
        self.death_reason = ""
        self.death_time: Optional[datetime] = None
        self.dialect: Optional[ShellDialect] = None

        self.exec_lock = threading.Lock()
        self.sequence = 0
        self.created_at = datetime.now()
        self.last_command = ""
        self.last_command_time: Optional[datetime] = None

        self.session_log_path = self._build_session_log_path()
        self._log_session("SYS", {"event": "session_created", "host": host_id})

    def _build_session_log_path(self) -> str:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag}__{safe_name(self.host_id)}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "host": self.host_id}
        data.update(payload)
        json_line(self.session_log_path, data)

    # ========= Lifecycle =========

    def start(self) -> None:
        """Settle the fresh shell, pick a dialect and run the setup line."""
        try:
            if self.startup_settle > 0:
                time.sleep(self.startup_settle)
            self._drain()
            self.dialect = self._detect_dialect()
            setup = self.dialect.setup_line(self.settings.EXTRA_PATH)
            with self.exec_lock:
                self._execute(setup, SHELL_SETUP_TIMEOUT, None)
        except (CommandTimeout, SessionLost, SudoPasswordRequired) as exc:
            self._log_session("SYS", {"event": "connect_failed", "error": str(exc)})
            raise ConnectError("shell", f"Shell setup on '{self.host_id}' failed: {exc}")
        self._log_session("SYS", {"event": "connected", "dialect": self.dialect.name})
        log_debug(f"{self.host_id}: shell ready (dialect={self.dialect.name})")

    def _detect_dialect(self) -> ShellDialect:
        configured = (self.settings.SHELL_DIALECT or "auto").lower()
        if configured in DIALECTS:
            return DIALECTS[configured]

        self._send('echo __SSHL_SHELL_"$SHELL"_END__\n')
        seen = ""
        deadline = time.monotonic() + DIALECT_PROBE_TIMEOUT
        while time.monotonic() < deadline:
            data = self._recv()
            if data:
                seen += data.decode("utf-8", errors="replace")
                match = SHELL_PROBE.search(seen)
                if match:
                    dialect = dialect_for_shell(match.group(1))
                    self._log_session("SYS", {"event": "shell_detected", "shell": match.group(1), "dialect": dialect.name})
                    return dialect
            else:
                time.sleep(POLL_INTERVAL)
        log_error(f"{self.host_id}: shell probe timed out, assuming posix")
        return POSIX

    def _mark_dead(self, reason: str) -> None:
        if self.state == "dead":
            return
        self.state = "dead"
        self.death_reason = reason
        self.death_time = datetime.now()
        self._log_session("SYS", {"event": "session_lost", "reason": reason})
        log_error(f"{self.host_id}: session lost ({reason})")

    def is_alive(self) -> bool:
        return self.state != "dead" and self.channel.is_open()

    def check_health(self) -> bool:
        if self.state == "dead":
            return False
        if not self.channel.is_open():
            self._mark_dead("channel closed")
            return False
        return True

    def close(self) -> None:
        self.channel.close()
        if self.state != "dead":
            self.state = "dead"
            self.death_reason = "closed"
            self.death_time = datetime.now()
        self._log_session("SYS", {"event": "closed"})

    # ========= Channel I/O =========

    def _recv(self) -> bytes:
        try:
            return self.channel.recv_available()
        except ChannelClosed as exc:
            self._mark_dead(str(exc))
            raise SessionLost(self.host_id, str(exc))

    def _send(self, data: str) -> None:
        try:
            self.channel.send(data)
        except ChannelClosed as exc:
            self._mark_dead(str(exc))
            raise SessionLost(self.host_id, str(exc))

    def _drain(self) -> int:
        drained = 0
        while True:
            data = self._recv()
            if not data:
                return drained
            drained += len(data)

    def _interrupt(self) -> bool:
        try:
            self.channel.send("\x03")
        except ChannelClosed:
            return False
        return True

    # ========= Command execution =========

    def run_command(
        self,
        command: str,
        timeout: Optional[float] = None,
        sudo_password: Optional[str] = None,
    ) -> CommandResult:
        if not command or not command.strip():
            raise InvalidParams("command is required")
        default_timeout = self.settings.COMMAND_TIMEOUT
        timeout = clamp_float(
            default_timeout if timeout is None else timeout,
            default_timeout, MIN_COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT,
        )

        with self.exec_lock:
            if not self.check_health():
                raise SessionLost(self.host_id, self.death_reason or "channel closed")
            self.state = "busy"
            self.last_command = command
            self.last_command_time = datetime.now()
            try:
                return self._execute(command, timeout, sudo_password)
            finally:
                if self.state == "busy":
                    self.state = "alive"

    def _execute(self, command: str, timeout: float, sudo_password: Optional[str]) -> CommandResult:
        # Caller holds exec_lock.
        self._drain()
        self.sequence += 1
        invocation = CommandInvocation(
            sequence=self.sequence,
            command=command,
            marker=make_marker(self.sequence),
        )
        echo_fragment = self.dialect.echo_fragment(invocation.marker)
        self._log_session(
            "IN", {"event": "command_start", "seq": invocation.sequence, "command": command, "timeout": timeout}
        )
        self._send(self.dialect.wrap(command, invocation.marker))

        deadline = invocation.started_at + timeout
        sudo_sent = False
        while True:
            data = self._recv()
            if data:
                if invocation.feed(data):
                    break
                continue

            if not sudo_sent and _awaits_sudo_password(command, invocation.tail()):
                if not sudo_password:
                    self._interrupt()
                    self._log_session("SYS", {"event": "sudo_password_required", "seq": invocation.sequence})
                    raise SudoPasswordRequired(
                        self.host_id, clean_output(invocation.output, echo_fragment)
                    )
                self._send(sudo_password + "\n")
                sudo_sent = True
                self._log_session("IN", {"event": "sudo_password_sent", "seq": invocation.sequence})
                continue

            if time.monotonic() >= deadline:
                interrupted = self._interrupt() if self.settings.INTERRUPT_ON_TIMEOUT else False
                self._log_session(
                    "SYS",
                    {"event": "command_timeout", "seq": invocation.sequence, "timeout": timeout, "interrupted": interrupted},
                )
                raise CommandTimeout(
                    self.host_id, timeout, clean_output(invocation.output, echo_fragment), interrupted
                )
            time.sleep(POLL_INTERVAL)

        elapsed = time.monotonic() - invocation.started_at
        result = CommandResult(
            host_id=self.host_id,
            sequence=invocation.sequence,
            command=command,
            output=clean_output(invocation.output, echo_fragment),
            exit_status=invocation.exit_status,
            elapsed=elapsed,
            truncated=invocation.truncated,
        )
        self._log_session(
            "OUT",
            {
                "event": "command_done",
                "seq": invocation.sequence,
                "exit_status": result.exit_status,
                "chars": len(result.output),
                "elapsed": round(elapsed, 3),
                "sudo_password_sent": sudo_sent,
            },
        )
        return result

    def info(self) -> Dict[str, Any]:
        return {
            "host": self.host_id,
            "hostname": self.params.hostname if self.params else None,
            "user": self.params.user if self.params else None,
            "port": self.params.port if self.params else None,
            "state": self.state,
            "alive": self.is_alive(),
            "death_reason": self.death_reason if self.state == "dead" else "",
            "dialect": self.dialect.name if self.dialect else None,
            "commands_run": self.sequence,
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }


# ========= Registry =========
class _Slot:
    def __init__(self):
        self.lock = threading.Lock()
        self.session: Optional[SSHSession] = None
        self.users = 0


class SessionManager:
    """Process-wide table of live sessions keyed by host identifier.

    The table lock only guards slot lookup. Each slot has its own lock, held
    while a connection is being opened, so a first-time connect for one host
    never delays another host and concurrent connects for the same host open
    a single connection.
    """

    def __init__(
        self,
        settings: Optional[ServerConfig] = None,
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        session_factory: Optional[Callable[[ConnectionParams], SSHSession]] = None,
    ):
        self.settings = settings or config
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.negotiator = AuthNegotiator(self.settings)
        self.session_factory = session_factory or self._open_session

        self.slots: Dict[str, _Slot] = {}
        self.lock = threading.Lock()

        self.health_stop = threading.Event()
        self.health_thread: Optional[threading.Thread] = None

    def _open_session(self, params: ConnectionParams) -> SSHSession:
        log_debug(f"opening session: {params.describe()}")
        transport = self.negotiator.negotiate(params)
        channel = open_shell(transport, params)
        session = SSHSession(
            params.host_id, channel, params=params, settings=self.settings,
            cache_dirs=self.cache_dirs, project_tag=self.project_tag,
        )
        try:
            session.start()
        except Exception:
            session.close()
            raise
        return session

    def _slot(self, host_id: str) -> Optional[_Slot]:
        with self.lock:
            return self.slots.get(host_id)

    def _acquire_slot(self, host_id: str) -> _Slot:
        with self.lock:
            slot = self.slots.get(host_id)
            if slot is None:
                slot = _Slot()
                self.slots[host_id] = slot
            slot.users += 1
            return slot

    def _release_slot(self, host_id: str, slot: _Slot) -> None:
        with self.lock:
            slot.users -= 1
            self._prune(host_id, slot)

    def _prune(self, host_id: str, slot: _Slot) -> None:
        # Caller holds self.lock.
        if slot.users == 0 and slot.session is None and self.slots.get(host_id) is slot:
            del self.slots[host_id]

    def get_or_create(
        self,
        host_id: str,
        params_supplier: Callable[[], ConnectionParams],
    ) -> Tuple[SSHSession, bool]:
        """Return ``(session, created)``; the supplier runs only when connecting.

        A slot that ends up without a session (failed alias lookup or a
        failed connect) is dropped from the table once nobody waits on it.
        """
        slot = self._acquire_slot(host_id)
        try:
            with slot.lock:
                current = slot.session
                if current is not None:
                    if current.check_health():
                        return current, False
                    log_error(f"{host_id}: replacing dead session ({current.death_reason})")
                    current.close()
                    slot.session = None

                params = params_supplier()
                if params.host_id != host_id:
                    params = replace(params, host_id=host_id)
                session = self.session_factory(params)
                slot.session = session
                return session, True
        finally:
            self._release_slot(host_id, slot)

    def get_session(self, host_id: str) -> Optional[SSHSession]:
        slot = self._slot(host_id)
        return slot.session if slot else None

    def execute(
        self,
        host_id: str,
        command: str,
        timeout: Optional[float] = None,
        sudo_password: Optional[str] = None,
    ) -> CommandResult:
        session = self.get_session(host_id)
        if session is None:
            raise SessionNotFound(host_id)
        try:
            return session.run_command(command, timeout=timeout, sudo_password=sudo_password)
        except SessionLost:
            self._evict(host_id, session)
            raise

    def _evict(self, host_id: str, session: SSHSession) -> None:
        slot = self._slot(host_id)
        if slot is None:
            return
        with slot.lock:
            if slot.session is session:
                slot.session = None
        with self.lock:
            self._prune(host_id, slot)
        session.close()

    def disconnect(self, host_id: str) -> bool:
        slot = self._slot(host_id)
        if slot is None:
            return False
        with slot.lock:
            session = slot.session
            slot.session = None
        with self.lock:
            self._prune(host_id, slot)
        if session is None:
            return False
        session.close()
        return True

    def list_connections(self) -> List[Dict[str, Any]]:
        with self.lock:
            slots = list(self.slots.items())
        rows = []
        for host_id, slot in sorted(slots):
            session = slot.session
            if session is not None:
                session.check_health()
                rows.append(session.info())
        return rows

    # ========= Background health =========

    def check_all(self) -> int:
        with self.lock:
            sessions = [slot.session for slot in self.slots.values() if slot.session is not None]
        dead = 0
        for session in sessions:
            if not session.check_health():
                dead += 1
        return dead

    def _health_loop(self) -> None:
        while not self.health_stop.wait(HEALTH_CHECK_INTERVAL):
            try:
                self.check_all()
            except Exception as exc:
                log_error(f"health loop error: {exc}")

    def start_health_monitor(self) -> None:
        if self.health_thread is not None:
            return
        self.health_thread = threading.Thread(target=self._health_loop, daemon=True)
        self.health_thread.start()

    def close_all(self) -> None:
        self.health_stop.set()
        with self.lock:
            slots = list(self.slots.values())
            self.slots.clear()
        for slot in slots:
            if slot.session is not None:
                slot.session.close()
