#!/usr/bin/env python3
"""
Error types for the Escudeiro gateway.

Each request-time error carries the HTTP status it is answered with; the
FastAPI exception handler in gateway_server turns them into plain-text
responses.
"""


class GatewayError(Exception):
    """Base class for gateway errors"""
    status_code = 500

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.message = message
        self.path = path


class ConfigurationError(GatewayError):
    """Invalid or missing configuration, fatal at startup"""


class PathEscapeError(GatewayError):
    """Request path resolves outside the content root"""
    status_code = 404


class DirectoryReadError(GatewayError):
    """Directory exists but could not be enumerated"""


class InterpreterError(GatewayError):
    """PHP interpreter could not be spawned, failed or timed out"""


class UpstreamError(GatewayError):
    """Upstream origin could not be reached"""
    status_code = 502
