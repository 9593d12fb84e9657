"""
Helper modules for subnetproxy.
"""

from .unified_logger import configure_logging, get_logger, get_service_logger, get_core_logger

__all__ = [
    'configure_logging',
    'get_logger',
    'get_service_logger',
    'get_core_logger',
]
