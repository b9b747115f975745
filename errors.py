"""
Reelsmith — Error types
"""


class ReelsmithError(Exception):
    """Base exception for all Reelsmith errors"""
    status = 500


class ConfigError(ReelsmithError):
    """Raised when configuration is invalid or missing"""
    status = 500


class ValidationError(ReelsmithError):
    """Raised when input validation fails"""
    status = 400


class NotFoundError(ReelsmithError):
    """Raised when a project, generation or scene does not exist"""
    status = 404


class ProviderError(ReelsmithError):
    """Raised when an external generation API fails"""
    status = 502

    def __init__(self, message, rate_limited=False):
        super().__init__(message)
        self.rate_limited = rate_limited


class PhaseError(ReelsmithError):
    """Raised by the phase client when a phase call fails"""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class GenerationCancelled(ReelsmithError):
    """Raised inside a pipeline thread once the run has been cancelled"""
    status = 409
