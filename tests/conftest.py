import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from shelterops.settings import Settings  # noqa: E402

WORKFLOW_BASE = "http://workflows.test"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment: no classifier key, no Redis."""
    return Settings(
        _env_file=None,
        openai_api_key=None,
        redis_url=None,
        workflow_base_url=WORKFLOW_BASE,
        db_sqlite_path=tmp_path / "shelterops.db",
    )


@pytest.fixture
def make_http() -> Callable[..., httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
