import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
HEALTH_CHECK_INTERVAL = 30
POLL_INTERVAL = 0.05

DEFAULT_COMMAND_TIMEOUT = 30.0
MIN_COMMAND_TIMEOUT = 1.0
MAX_COMMAND_TIMEOUT = 3600.0
SHELL_SETUP_TIMEOUT = 10.0
DIALECT_PROBE_TIMEOUT = 5.0
STARTUP_SETTLE = 0.4

MAX_OUTPUT_CHARS = 2_000_000
DEFAULT_READ_LOG_LINES = 100
MAX_READ_LOG_LINES = 10_000

DEFAULT_PORT = 22
DEFAULT_KEY_FILES = ("id_ed25519", "id_rsa", "id_ecdsa", "id_dsa")
PTY_TERM = "dumb"
PTY_WIDTH = 512
PTY_HEIGHT = 48

SHELL_DIALECTS = ("auto", "posix", "fish", "csh")

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
OSC_ESCAPE = re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)")
STRING_ESCAPE = re.compile(r"\x1B[P^_].*?\x1B\\", re.DOTALL)
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
SUDO_PROMPT = re.compile(r"\[sudo\] password for [^:\n]*:\s*$")
# A bare prompt is only answered when the command itself calls sudo
PASSWORD_PROMPT = re.compile(r"[Pp]assword:\s*$")
SUDO_COMMAND = re.compile(r"(^|[\s;&|(`])sudo(\s|$)")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        home = os.path.expanduser("~")
        self.SSH_DIR: str = os.path.join(home, ".ssh")
        self.SSH_CONFIG_PATH: str = os.path.join(self.SSH_DIR, "config")
        self.KNOWN_HOSTS_PATH: str = os.path.join(self.SSH_DIR, "known_hosts")
        self.VERIFY_HOST_KEY: bool = True
        self.USE_AGENT: bool = True
        self.COMMAND_TIMEOUT: float = DEFAULT_COMMAND_TIMEOUT
        self.SHELL_DIALECT: str = "auto"
        self.INTERRUPT_ON_TIMEOUT: bool = True
        self.EXTRA_PATH: Optional[str] = None
        self.DEBUG: bool = False
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIR: Optional[str] = None
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SSH_DIR = os.path.expanduser(os.environ.get("SSH_LIAISON_SSH_DIR", self.SSH_DIR))
        self.SSH_CONFIG_PATH = os.path.expanduser(
            os.environ.get("SSH_LIAISON_SSH_CONFIG", self.SSH_CONFIG_PATH)
        )
        self.KNOWN_HOSTS_PATH = os.path.expanduser(
            os.environ.get("SSH_LIAISON_KNOWN_HOSTS", self.KNOWN_HOSTS_PATH)
        )
        self.VERIFY_HOST_KEY = _env_bool("SSH_LIAISON_VERIFY_HOST_KEY", self.VERIFY_HOST_KEY)
        self.USE_AGENT = _env_bool("SSH_LIAISON_USE_AGENT", self.USE_AGENT)
        self.INTERRUPT_ON_TIMEOUT = _env_bool("SSH_LIAISON_INTERRUPT_ON_TIMEOUT", self.INTERRUPT_ON_TIMEOUT)
        self.DEBUG = _env_bool("SSH_LIAISON_DEBUG", self.DEBUG)
        self.EXTRA_PATH = os.environ.get("SSH_LIAISON_EXTRA_PATH", self.EXTRA_PATH)
        self.CACHE_DIR = os.environ.get("SSH_LIAISON_CACHE_DIR", self.CACHE_DIR)

        timeout_env = os.environ.get("SSH_LIAISON_COMMAND_TIMEOUT")
        if timeout_env:
            try:
                self.COMMAND_TIMEOUT = float(timeout_env)
            except ValueError:
                pass

        dialect_env = os.environ.get("SSH_LIAISON_SHELL")
        if dialect_env and dialect_env.strip().lower() in SHELL_DIALECTS:
            self.SHELL_DIALECT = dialect_env.strip().lower()


# Global instance
config = ServerConfig()
