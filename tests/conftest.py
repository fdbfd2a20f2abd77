import io
import sys
from pathlib import Path

import pytest

# Add project root to sys.path
# This ensures that 'agent_runner' is importable as a top-level module during tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def override_runner_config():
    """Temporarily replace RUNNER config values; restored after the test."""
    from agent_runner.config import config

    saved = {}

    def _override(**values):
        config.defrost()
        for key, value in values.items():
            saved.setdefault(key, config.RUNNER[key])
            config.RUNNER[key] = value
        config.freeze()

    try:
        yield _override
    finally:
        config.defrost()
        for key, value in saved.items():
            config.RUNNER[key] = value
        config.freeze()


@pytest.fixture
def console():
    return io.StringIO(), io.StringIO()


@pytest.fixture
def run_logger(tmp_path, console):
    from agent_runner.runtime.run_logger import RunLogger

    stdout, stderr = console
    return RunLogger(tmp_path / "main.log", stdout=stdout, stderr=stderr)


@pytest.fixture
def registry(run_logger):
    from agent_runner.runtime.registry import RunnerRegistry

    return RunnerRegistry(
        run_logger=run_logger,
        agent_concurrency=1,
        command_concurrency=0,
        mock_termination=False,
    )
