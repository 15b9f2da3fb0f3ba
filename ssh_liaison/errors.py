from typing import List, Optional


class SSHLiaisonError(Exception):
    kind = "Internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_result(self) -> dict:
        return {"success": False, "error": self.message, "error_kind": self.kind}


class ConfigNotFound(SSHLiaisonError):
    kind = "ConfigNotFound"


class InvalidParams(SSHLiaisonError):
    kind = "InvalidParams"


class ConnectError(SSHLiaisonError):
    """Transport could not be established.

    ``reason`` is one of ``unreachable``, ``handshake``, ``host_key`` or
    ``shell``. Credential rejections never surface as ConnectError.
    """

    kind = "ConnectError"

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason

    def to_result(self) -> dict:
        result = super().to_result()
        result["reason"] = self.reason
        return result


class AuthExhausted(SSHLiaisonError):
    kind = "AuthExhausted"

    def __init__(self, user: str, hostname: str, tried: List[str], password_attempted: bool):
        if tried:
            detail = "tried: " + ", ".join(tried)
        else:
            detail = "no credential source was available (agent empty, no key files, no password)"
        super().__init__(f"Authentication failed for {user}@{hostname}; {detail}")
        self.tried = list(tried)
        self.password_attempted = password_attempted

    def to_result(self) -> dict:
        result = super().to_result()
        result["password_attempted"] = self.password_attempted
        return result


class SessionNotFound(SSHLiaisonError):
    kind = "SessionNotFound"

    def __init__(self, host_id: str):
        super().__init__(f"Not connected to host '{host_id}'. Call ssh_connect first.")
        self.host_id = host_id


class SessionLost(SSHLiaisonError):
    kind = "SessionLost"

    def __init__(self, host_id: str, reason: str):
        super().__init__(
            f"Session for '{host_id}' was lost ({reason}). Reconnect with ssh_connect."
        )
        self.host_id = host_id
        self.reason = reason


class CommandTimeout(SSHLiaisonError):
    kind = "CommandTimeout"

    def __init__(self, host_id: str, timeout: float, partial_output: str = "", interrupted: bool = False):
        message = f"Command on '{host_id}' did not finish within {timeout:g}s"
        if interrupted:
            message += " (Ctrl+C sent)"
        super().__init__(message + ". The session is still usable.")
        self.host_id = host_id
        self.timeout = timeout
        self.partial_output = partial_output
        self.interrupted = interrupted

    def to_result(self) -> dict:
        result = super().to_result()
        if self.partial_output:
            result["partial_output"] = self.partial_output
        return result


class SudoPasswordRequired(SSHLiaisonError):
    kind = "SudoPasswordRequired"

    def __init__(self, host_id: str, partial_output: Optional[str] = None):
        super().__init__(
            f"Command on '{host_id}' is waiting for a sudo password and none was supplied. "
            "Pass sudo_password or configure passwordless sudo."
        )
        self.host_id = host_id
        self.partial_output = partial_output or ""

    def to_result(self) -> dict:
        result = super().to_result()
        if self.partial_output:
            result["partial_output"] = self.partial_output
        return result
