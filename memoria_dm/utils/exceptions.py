from typing import Any, Dict, Optional


class MessagingError(Exception):
    """Base error for messaging operations.

    Carries the operation name and the conversation partner so callers can
    decide whether an explicit retry makes sense.
    """

    status_code = 500

    def __init__(self, message: str, operation: Optional[str] = None, partner_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.partner_id = partner_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "operation": self.operation, "partnerId": self.partner_id}

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class ValidationError(MessagingError):
    """Rejected input; never reaches the message store."""

    status_code = 400


class NotFoundError(MessagingError):

    status_code = 404


class TransientStoreError(MessagingError):
    """Store or network unavailable. Retry only on explicit user action."""

    status_code = 503
