from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_ESCAPE_MODES = ("clamp", "reject")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _csv_env(name: str) -> list[str]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class IdeConfig:
    """Process-wide settings, resolved once at startup and never mutated."""

    workspace_root: str
    auth_token: str
    host: str = "0.0.0.0"
    port: int = 3000
    exec_timeout_s: float = 10.0
    exec_isolated: bool = False
    exec_max_output_bytes: int = 0
    path_escape_mode: str = "clamp"
    resolve_symlinks: bool = False
    node_bin: str = "node"
    python_bin: str = "python3"
    shell_bin: str = "/bin/sh"
    relay_queue_size: int = 256
    static_dir: str | None = None
    cors_allow_origins: tuple[str, ...] = ()
    log_level: str = "info"


def canonical_root(path: str) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(path)))


def load_config() -> IdeConfig:
    token = (os.environ.get("AUTH_TOKEN") or "").strip()
    if not token:
        # Unset token must never mean "open"; mint one for this process.
        token = secrets.token_urlsafe(32)
        logger.warning(
            "AUTH_TOKEN is not set; generated a one-off token for this process: %s",
            token,
        )

    mode = (os.environ.get("MICROIDE_PATH_ESCAPE") or "clamp").strip().lower()
    if mode not in _ESCAPE_MODES:
        logger.warning("Unknown MICROIDE_PATH_ESCAPE=%r, using 'clamp'", mode)
        mode = "clamp"

    static_dir = (os.environ.get("STATIC_DIR") or "").strip() or None

    return IdeConfig(
        workspace_root=canonical_root(
            (os.environ.get("WORKSPACE_ROOT") or "").strip() or "workspace"
        ),
        auth_token=token,
        host=(os.environ.get("HOST") or "0.0.0.0").strip() or "0.0.0.0",
        port=max(1, _env_int("PORT", 3000)),
        exec_timeout_s=max(0.1, _env_float("MICROIDE_EXEC_TIMEOUT_S", 10.0)),
        exec_isolated=_env_bool("MICROIDE_EXEC_ISOLATED", default=False),
        exec_max_output_bytes=max(0, _env_int("MICROIDE_EXEC_MAX_OUTPUT_BYTES", 0)),
        path_escape_mode=mode,
        resolve_symlinks=_env_bool("MICROIDE_RESOLVE_SYMLINKS", default=False),
        node_bin=(os.environ.get("MICROIDE_NODE_BIN") or "node").strip() or "node",
        python_bin=(os.environ.get("MICROIDE_PYTHON_BIN") or "python3").strip()
        or "python3",
        shell_bin=(os.environ.get("MICROIDE_SHELL_BIN") or "/bin/sh").strip()
        or "/bin/sh",
        relay_queue_size=max(1, _env_int("MICROIDE_RELAY_QUEUE_SIZE", 256)),
        static_dir=static_dir,
        cors_allow_origins=tuple(_csv_env("CORS_ALLOW_ORIGINS")),
        log_level=(os.environ.get("LOG_LEVEL") or "info").strip().lower() or "info",
    )
