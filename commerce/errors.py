from typing import Any, Optional


class CommerceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CommerceError):
    status_code = 400


class AuthError(CommerceError):
    """Webhook signature did not verify. Never retried, never recorded."""

    status_code = 400


class NotFoundError(CommerceError):
    status_code = 404


class ConflictError(CommerceError):
    status_code = 409


class ExternalServiceError(CommerceError):
    status_code = 502
