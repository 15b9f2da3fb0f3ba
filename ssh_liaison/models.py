from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ssh_liaison.config import DEFAULT_PORT


@dataclass(frozen=True)
class ConnectionParams:
    host_id: str
    hostname: str
    user: str
    port: int = DEFAULT_PORT
    identity_file: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    identities_only: bool = False
    proxy_command: Optional[str] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    def describe(self) -> Dict[str, Any]:
        # Safe for logs: never includes the password itself.
        return {
            "host_id": self.host_id,
            "hostname": self.hostname,
            "port": self.port,
            "user": self.user,
            "identity_file": self.identity_file,
            "identities_only": self.identities_only,
            "proxy_command": bool(self.proxy_command),
            "password_supplied": self.has_password,
        }


@dataclass
class CommandResult:
    host_id: str
    sequence: int
    command: str
    output: str
    exit_status: int
    elapsed: float
    truncated: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host_id,
            "stdout_and_stderr": self.output,
            "exit_status": self.exit_status,
            "sequence": self.sequence,
            "elapsed": round(self.elapsed, 3),
            "truncated": self.truncated,
        }
