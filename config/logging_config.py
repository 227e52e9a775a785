"""
Logging Configuration for the Research Core
Structured logging with an execution audit trail
"""

import logging
import logging.config
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .settings import ResearchSettings, get_settings


def setup_logging(settings: Optional[ResearchSettings] = None):
    """
    Set up logging for the research core.
    File handlers emit JSON lines when structured logging is enabled.
    """
    settings = settings or get_settings()

    log_path = settings.ensure_log_path()
    main_log_file = log_path / "research_core.log"
    audit_log_file = log_path / "audit.log"
    error_log_file = log_path / "errors.log"

    file_formatter = "json" if settings.structured_logging else "detailed"

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "audit": {
                "format": "%(asctime)s [AUDIT] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": file_formatter,
                "filename": str(main_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "audit_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "json" if settings.structured_logging else "audit",
                "filename": str(audit_log_file),
                "maxBytes": 52428800,  # 50MB
                "backupCount": 10,
                "encoding": "utf8"
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": file_formatter,
                "filename": str(error_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 10,
                "encoding": "utf8"
            }
        },
        "loggers": {
            "": {  # Root logger
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "research_agents": {
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["file"],
                "propagate": False
            }
        }
    }

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger("research_agents")
    logger.info("Logging system initialized")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Log directory: {settings.log_path}")


class ExecutionAuditLogger:
    """
    Audit logger for workflow execution.
    Writes one structured line per workflow lifecycle event and task outcome.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_workflow_event(
        self,
        workflow_id: str,
        event_type: str,
        phase: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log a workflow lifecycle event"""
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "WORKFLOW_EVENT",
            "workflow_event_type": event_type,
            "workflow_id": workflow_id,
            "phase": phase,
            "details": details or {}
        }

        self.logger.info(f"WORKFLOW_EVENT: {audit_entry}", extra={"audit": audit_entry})

    def log_task_outcome(
        self,
        workflow_id: str,
        phase: str,
        worker_name: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None
    ):
        """Log the terminal outcome of one scheduled task"""
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "TASK_OUTCOME",
            "workflow_id": workflow_id,
            "phase": phase,
            "worker_name": worker_name,
            "status": "SUCCESS" if success else "FAILURE",
            "duration_ms": round(duration_ms, 1),
            "error": error
        }

        self.logger.info(f"TASK_OUTCOME: {audit_entry}", extra={"audit": audit_entry})
