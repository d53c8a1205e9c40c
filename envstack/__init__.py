"""
envstack - ephemeral environment lifecycle orchestrator

Stands up and tears down per-branch environments through a remote
change-set based infrastructure API, and reports the result on the PR.
"""

__version__ = "0.1.0"


__all__ = ["StackConfig", "load_config", "get_envstack_home"]

from .config import StackConfig, load_config, get_envstack_home
