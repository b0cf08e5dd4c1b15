"""
Configuration package.
"""

from hedgearb.config.config import ArbitrageConfig, Settings, env_bool

__all__ = [
    "ArbitrageConfig",
    "Settings",
    "env_bool",
]
