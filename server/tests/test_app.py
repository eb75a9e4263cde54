import importlib
import logging
import sys

import pytest


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    level, handlers = root.level, root.handlers[:]
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def test_log_level_from_dotenv_applies_at_import(tmp_path, monkeypatch, restore_root_logging):
    (tmp_path / ".env").write_text("LOG_LEVEL=DEBUG\n")
    monkeypatch.chdir(tmp_path)
    # recorded so the value loaded from .env is removed again afterwards
    monkeypatch.setenv("LOG_LEVEL", "")
    monkeypatch.delenv("LOG_LEVEL")
    monkeypatch.delitem(sys.modules, "app", raising=False)

    app = importlib.import_module("app")

    assert logging.getLogger().level == logging.DEBUG
    assert (tmp_path / "logs" / "server.log").exists()
    assert callable(app.main)
