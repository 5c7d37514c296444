import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from the user's config file, logs and env overrides."""

    for key in list(os.environ):
        if key.startswith("MINDSTRIKE_LLM_") or key.startswith("MINDSTRIKE_LOG"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MINDSTRIKE_LLM_CONFIG_FILE", str(tmp_path / "absent.toml"))
    monkeypatch.setenv("MINDSTRIKE_LOG_DIR", str(tmp_path / "logs"))
    yield
