"""Exception classes for the authorization core."""

from fastapi import HTTPException, status


class RBACError(Exception):
    """Base exception for the authorization core."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(RBACError):
    """Raised when input validation fails. No state was changed."""
    pass


class AuthorizationError(RBACError):
    """Raised when the actor lacks a permission or sufficient rank."""
    pass


class NotFoundError(RBACError):
    """Raised when a requested user, role or permission does not exist."""
    pass


class ExpiredError(RBACError):
    """Raised when a time-bounded grant is past its expiry."""
    pass


class CacheUnavailableError(RBACError):
    """Raised when an atomic operation cannot reach the shared cache."""
    pass


class EmergencyTokenNotFound(NotFoundError):
    """Raised for unknown, malformed, revoked or already redeemed tokens."""
    pass


class EmergencyTokenExpired(ExpiredError):
    """Raised when a break-glass token is redeemed after its window."""
    pass


# HTTP exception shortcuts
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def forbidden(detail: str = "Insufficient permissions") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def unprocessable(detail: str = "Invalid request") -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def gone(detail: str = "Expired") -> HTTPException:
    return HTTPException(status_code=status.HTTP_410_GONE, detail=detail)


def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def to_http(exc: RBACError) -> HTTPException:
    """Map a domain error onto the HTTP status the API returns for it."""
    if isinstance(exc, AuthorizationError):
        return forbidden(exc.message)
    if isinstance(exc, NotFoundError):
        return not_found(exc.message)
    if isinstance(exc, ExpiredError):
        return gone(exc.message)
    if isinstance(exc, CacheUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    return unprocessable(exc.message)
