"""
Research Core Configuration Module
Manages all configuration for the research orchestration core
"""

from .settings import ResearchSettings, settings, get_settings
from .logging_config import setup_logging, ExecutionAuditLogger

__all__ = [
    "ResearchSettings",
    "settings",
    "get_settings",
    "setup_logging",
    "ExecutionAuditLogger",
]
