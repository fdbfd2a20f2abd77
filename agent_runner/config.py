"""
Configuration Loader.

This module initializes the global configuration object (`config`) used throughout
the runner. It leverages `yacs` to provide a hierarchical, dot-accessible
configuration structure defined in `agent_runner.core_config`.

Usage:
    from agent_runner.config import config
    print(config.RUNNER.AGENT_GRACE_PERIOD_SEC)
"""

from agent_runner.core_config import get_cfg_defaults

config = get_cfg_defaults()

# Freeze config to prevent accidental changes during runtime.
config.freeze()
