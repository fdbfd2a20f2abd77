from pathlib import Path

import pytest

from agent_runner.config import config
from agent_runner.core_config import get_cfg_defaults


def test_default_config_loading():
    """Verify default values are loaded correctly."""
    cfg = get_cfg_defaults()
    assert cfg.SYSTEM.ROOT == str(Path(__file__).parent.parent.parent)
    assert cfg.RUNNER.CALLBACK_HOST
    assert cfg.RUNNER.CALLBACK_PATH == "/agent-result"
    assert cfg.RUNNER.FAILURE_STDERR_TAIL_CHARS == 500
    assert cfg.RUNNER.SIGTERM_WAIT_SEC > 0


def test_config_singleton_is_frozen():
    assert config.is_frozen()
    with pytest.raises(Exception):
        config.RUNNER.AGENT_CONCURRENCY = 5


def test_templates_are_bundled():
    templates = Path(config.SYSTEM.TEMPLATES_DIR)
    for name in ("result_delivery_callback.md.j2", "result_delivery_file.md.j2", "result_delivery_stdout.md.j2"):
        assert (templates / name).is_file()


def test_env_overrides(monkeypatch):
    import importlib

    from agent_runner import core_config

    monkeypatch.setenv("AGENT_RUNNER_AGENT_CONCURRENCY", "3")
    monkeypatch.setenv("AGENT_RUNNER_GRACE_PERIOD_SEC", "not-a-number")
    try:
        reloaded = importlib.reload(core_config)
        cfg = reloaded.get_cfg_defaults()
        assert cfg.RUNNER.AGENT_CONCURRENCY == 3
        assert cfg.RUNNER.AGENT_GRACE_PERIOD_SEC == 30.0
    finally:
        monkeypatch.delenv("AGENT_RUNNER_AGENT_CONCURRENCY")
        monkeypatch.delenv("AGENT_RUNNER_GRACE_PERIOD_SEC")
        importlib.reload(core_config)
