"""
Error taxonomy shared by the store, the moderation rules and the API layer.

Each error carries the HTTP status it is rendered with; handlers in main.py turn
them into a JSON body of the form {"message": ...}.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(MarketplaceError, ValueError):
    # Also a ValueError so pydantic validators can raise it directly.
    status_code = 400


class Conflict(MarketplaceError):
    # duplicate username, duplicate shop
    status_code = 400


class InvalidTransition(MarketplaceError):
    status_code = 409


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404
