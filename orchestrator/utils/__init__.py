"""
Utilities Module
================

Common utilities shared across the application:
- logger: Structured logging with levels and context
- config: Centralized configuration management
- cache: TTL cache with copy-on-write updates
- tokens: Token estimation and truncation
"""

from orchestrator.utils.cache import TTLCache
from orchestrator.utils.config import Config, get_config
from orchestrator.utils.logger import Logger, logger
from orchestrator.utils.tokens import estimate_tokens

__all__ = ["Config", "Logger", "TTLCache", "estimate_tokens", "get_config", "logger"]
