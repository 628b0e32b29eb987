"""
promorch - Content promotion orchestrator

Moves batches of source items through discovery, transformation, copy,
promotion and verification stages. Stateless workers are dispatched by
periodic scheduler ticks; all coordination goes through a shared record
store with compare-and-swap writes.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["PromorchConfig", "load_config", "get_promorch_home"]

from .config import PromorchConfig, load_config, get_promorch_home
