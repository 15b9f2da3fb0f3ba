import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from ssh_liaison.config import (
    ANSI_ESCAPE, OSC_ESCAPE, STRING_ESCAPE, CONTROL_CHARS, config
)


def log_error(message: str) -> None:
    print(f"[SSH-LIAISON] {message}", file=sys.stderr, flush=True)


def log_debug(message: str) -> None:
    if config.DEBUG:
        print(f"[SSH-LIAISON] debug: {message}", file=sys.stderr, flush=True)


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def strip_escapes(text: str) -> str:
    text = OSC_ESCAPE.sub("", text)
    text = STRING_ESCAPE.sub("", text)
    return ANSI_ESCAPE.sub("", text)


def clean_output(text: str, echo_fragment: Optional[str] = None) -> str:
    """Turn raw terminal bytes (already decoded) into plain command output.

    Escape sequences and stray control characters are removed and line
    endings normalised. If ``echo_fragment`` is given and the terminal echoed
    the submitted line, everything up to the end of that echoed line is
    dropped.
    """
    if not text:
        return ""
    text = strip_escapes(text)
    text = text.replace("\r\n", "\n")
    if echo_fragment:
        pos = text.find(echo_fragment)
        if pos >= 0:
            eol = text.find("\n", pos)
            text = text[eol + 1:] if eol >= 0 else ""
    text = text.replace("\r", "")
    text = CONTROL_CHARS.sub("", text)
    return text.rstrip()


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }


def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or config.CACHE_DIR
    if cache_override:
        cache_root = os.path.join(os.path.abspath(os.path.expanduser(cache_override)), project_ns)
    else:
        cache_root = os.path.join(project_root, ".ssh-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }
