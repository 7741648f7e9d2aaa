class StorefrontError(Exception):
    """Base for failures surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StorefrontError):
    status_code = 400


class SignatureError(StorefrontError):
    status_code = 401


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError):
    status_code = 409


class UpstreamError(StorefrontError):
    """Gateway unreachable or misbehaving. Safe for the caller to retry."""

    status_code = 502


class UpstreamTimeout(UpstreamError):
    status_code = 504
