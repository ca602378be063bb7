"""
Custom exceptions for the plan monitor application.
"""

class PlanMonitorError(Exception):
    """Base exception for all plan monitor errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}

class ConfigurationError(PlanMonitorError):
    """Raised when the configuration file cannot be read or validated."""
    pass

class ValidationError(PlanMonitorError):
    """Raised when tool input is rejected."""
    pass
