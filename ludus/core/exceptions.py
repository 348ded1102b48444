# ludus/core/exceptions.py
"""
Domain-specific exceptions for the LUDUS platform.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Infrastructure failures (cache, analytics) are absorbed where they
happen and never surface as one of these.
"""

from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class InvalidTransitionException(ValidationException):
    """Raised when a status change is not one of the permitted edges."""

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
        allowed: Iterable[str] = (),
    ) -> None:
        allowed_list = sorted(allowed)
        super().__init__(
            message=f"Cannot change {entity} status from '{current}' to '{target}'",
            code="INVALID_STATUS_TRANSITION",
            details={
                "entity": entity,
                "current_status": current,
                "target_status": target,
                "allowed_targets": allowed_list,
            },
        )
        self.current = current
        self.target = target


class PaymentCaptureException(BusinessRuleException):
    """Raised when the payment gateway did not capture the booking total."""

    def __init__(
        self,
        booking_id: str,
        reason: str,
        *,
        payment_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=f"Payment could not be captured: {reason}",
            code="PAYMENT_CAPTURE_FAILED",
            details={"booking_id": booking_id, "payment_id": payment_id},
        )


class CancellationWindowException(BusinessRuleException):
    """Raised when a confirmed booking is cancelled inside the no-cancel window."""

    def __init__(self, required_hours: int, hours_remaining: float) -> None:
        super().__init__(
            message=f"Confirmed bookings can only be cancelled more than {required_hours} hours in advance",
            code="CANCELLATION_WINDOW_CLOSED",
            details={
                "required_hours": required_hours,
                "hours_remaining": round(hours_remaining, 2),
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
