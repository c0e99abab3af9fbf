import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture()
def media_root(tmp_path):
    """An empty media root with one category folder."""
    root = tmp_path / "media"
    (root / "Show").mkdir(parents=True)
    return root


@pytest.fixture()
def app_module(media_root, monkeypatch):
    """Fresh app state pointed at ``media_root`` with no background work and no ffprobe."""
    monkeypatch.setenv("MEDIA_ROOT", str(media_root))
    monkeypatch.setenv("PRECONVERT_ENABLED", "0")
    monkeypatch.setenv("FFPROBE_DISABLE", "1")
    monkeypatch.delenv("MEDIA_CONFIG", raising=False)
    if "app" in sys.modules:
        module = importlib.reload(sys.modules["app"])
    else:
        module = importlib.import_module("app")
    yield module
    module.STATE["preconverter"].stop()


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
