"""
Unified logging system for subnetproxy

Provides consistent, colored logging across all components:
- Address pool and selection
- Connection router and SOCKS5 engine
- Process bootstrap

Based on loguru with component-specific context bound into every record.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger as _logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[short_name]}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | "
    "{level:<8} | "
    "{extra[component_id]:<30} | "
    "{message}"
)

SOURCE_WIDTH = 40


def _truncate_module_path(module: str, max_width: int) -> str:
    if len(module) <= max_width:
        return module

    parts = module.split(".")
    idx = len(parts) - 2
    while idx >= 0:
        candidate = ".".join(parts[idx:])
        if len(candidate) + 3 <= max_width:
            return f"...{candidate}"
        idx -= 1
    return f"...{parts[-1][-(max_width - 3):]}"


def _format_record(record) -> bool:
    module_name = record.get("name") or record.get("module", "")
    suffix = f":{record.get('function', '')}:{record.get('line', 0)}"
    available = SOURCE_WIDTH - len(suffix)
    module_display = "..." if available <= 3 else _truncate_module_path(module_name, available)
    record["extra"]["short_name"] = f"{module_display + suffix:>{SOURCE_WIDTH}}"
    return True


def _ensure_component(record) -> bool:
    record["extra"].setdefault("component_id", "UNKNOWN")
    return True


def configure_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    *,
    log_to_console: bool = True,
) -> None:
    """
    (Re)configure the shared loguru handlers.

    Called once by the launcher after settings are loaded. Loggers created
    before this call pick up the new handlers because they share the global
    loguru instance.
    """
    _logger.remove()
    level = log_level.upper()

    if log_to_console:
        _logger.add(
            sys.stdout,
            format=CONSOLE_FORMAT,
            level=level,
            colorize=True,
            filter=lambda record: _ensure_component(record) and _format_record(record),
            backtrace=True,
            diagnose=False,
        )

    if log_dir:
        logs_path = Path(log_dir)
        logs_path.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(logs_path / "subnetproxy.log"),
            format=FILE_FORMAT,
            level="DEBUG",
            filter=_ensure_component,
            rotation="50 MB",
            retention=5,
            compression="gz",
            backtrace=False,
            diagnose=False,
            enqueue=True,  # Thread-safe writes from worker threads
            catch=True,
        )

    _logger._subnetproxy_configured = True


class UnifiedLogger:
    """
    Logger bound to one component of the proxy.

    Component ids look like ``SERVICE:ROUTER`` or ``CORE:ADDRESS_POOL`` with any
    extra context appended as ``key=value`` pairs.
    """

    def __init__(
        self,
        component_type: str,
        component_name: str,
        context: Optional[Dict[str, Any]] = None,
        log_level: str = "INFO",
    ):
        self.component_type = component_type.upper()
        self.component_name = component_name.upper()
        self.context = context or {}
        self.log_level = log_level.upper()

        self.component_id = f"{self.component_type}:{self.component_name}"
        if self.context:
            context_str = ":".join(f"{k}={v}" for k, v in self.context.items())
            self.component_id = f"{self.component_id}:{context_str}"

        if not getattr(_logger, "_subnetproxy_configured", False):
            configure_logging(self.log_level, os.getenv("LOG_DIR"))

        self._logger = _logger.bind(component_id=self.component_id)

    def debug(self, message: str, **kwargs):
        self._logger.opt(depth=1).debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        self._logger.opt(depth=1).info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._logger.opt(depth=1).warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self._logger.opt(depth=1).error(message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._logger.opt(depth=1).critical(message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error together with the active exception's traceback."""
        self._logger.opt(depth=1, exception=True).error(message, **kwargs)


def get_logger(
    component_type: str,
    component_name: str,
    context: Optional[Dict[str, Any]] = None,
    log_level: Optional[str] = None,
) -> UnifiedLogger:
    """
    Factory function to create unified loggers.

    Args:
        component_type: Type of component (core, service)
        component_name: Name of specific component
        context: Additional context bound into the component id
        log_level: Log level (defaults to env LOG_LEVEL or INFO)

    Examples:
        logger = get_logger("core", "address_pool")
        logger = get_logger("service", "router", {"client": "10.0.0.5"})
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    return UnifiedLogger(
        component_type=component_type,
        component_name=component_name,
        context=context,
        log_level=log_level,
    )


def get_service_logger(service_name: str, **context) -> UnifiedLogger:
    """Get logger for long-running services (listener, router)."""
    return get_logger("service", service_name, context)


def get_core_logger(module_name: str, **context) -> UnifiedLogger:
    """Get logger for core utilities."""
    return get_logger("core", module_name, context)
