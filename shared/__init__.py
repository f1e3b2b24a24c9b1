"""
pechain Shared Module
=====================

Configuration and logging shared by every pechain component.
"""

from shared.config import PechainConfig, get_config
from shared.logger import StructuredLogger, get_logger

__all__ = ["PechainConfig", "StructuredLogger", "get_config", "get_logger"]
