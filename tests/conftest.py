import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `microide/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

AUTH_TOKEN = "s3cret-token"

_CONFIG_ENV = (
    "AUTH_TOKEN",
    "WORKSPACE_ROOT",
    "HOST",
    "PORT",
    "STATIC_DIR",
    "CORS_ALLOW_ORIGINS",
    "LOG_LEVEL",
    "MICROIDE_EXEC_TIMEOUT_S",
    "MICROIDE_EXEC_ISOLATED",
    "MICROIDE_EXEC_MAX_OUTPUT_BYTES",
    "MICROIDE_PATH_ESCAPE",
    "MICROIDE_RESOLVE_SYMLINKS",
    "MICROIDE_NODE_BIN",
    "MICROIDE_PYTHON_BIN",
    "MICROIDE_SHELL_BIN",
    "MICROIDE_RELAY_QUEUE_SIZE",
)


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # A developer's shell or .env must not leak into unit tests.
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return Path(str(root.resolve()))


@pytest.fixture
def ide_config(workspace: Path):
    from microide.config import IdeConfig

    return IdeConfig(
        workspace_root=str(workspace),
        auth_token=AUTH_TOKEN,
        exec_timeout_s=5.0,
        python_bin=sys.executable,
    )


@pytest.fixture
def client(ide_config):
    pytest.importorskip("fastapi")
    pytest.importorskip("httpx")
    from fastapi.testclient import TestClient

    from microide.runtimes.ws_server import create_app

    # Entering the client keeps one event loop for every request and socket.
    with TestClient(create_app(ide_config)) as c:
        yield c


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"x-auth-token": AUTH_TOKEN}


@pytest.fixture
def auth_token() -> str:
    return AUTH_TOKEN
