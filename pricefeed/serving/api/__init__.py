"""
API Module
"""
from .dependencies import get_services
from .middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

__all__ = [
    "get_services",
    "RequestLoggingMiddleware",
    "SecurityHeadersMiddleware",
]
