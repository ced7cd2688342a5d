"""Error taxonomy shared by the checkout, gateway and reconciliation layers.

Every error carries the HTTP status it maps to; ``storefront.main`` renders
them as ``{"success": false, "message": ...}``.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    status_code = 400


class ConflictError(StorefrontError):
    """Operation not allowed in the record's current state."""

    status_code = 400


class AuthenticationError(StorefrontError):
    status_code = 401


class ForbiddenError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class RateLimitError(StorefrontError):
    status_code = 429


class GatewayError(StorefrontError):
    """An external payment gateway call failed or timed out."""

    status_code = 500

    def __init__(self, message: str, gateway: str = None):
        super().__init__(message)
        self.gateway = gateway
