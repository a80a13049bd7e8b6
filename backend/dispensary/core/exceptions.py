"""
HTTP translation of domain errors.

Business-rule failures keep their stable code and message in the response
body. Invariant violations are logged in full internally and answered with
a generic 500 so internal details never leak to callers.
"""
from fastapi import HTTPException, status
import logging

from dispensary.core.errors import DispensingError, InvariantViolation

logger = logging.getLogger(__name__)


class BusinessError:
    """Factories for the HTTP responses the dispensing API can return."""

    @staticmethod
    def not_found(detail: dict) -> HTTPException:
        """404 for a prescription or inventory item missing in the caller's tenant."""
        logger.info(f"Not found: {detail.get('message')}")
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )

    @staticmethod
    def bad_request(detail: dict) -> HTTPException:
        logger.info(f"Bad request: {detail.get('message')}")
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
        )

    @staticmethod
    def conflict(detail: dict) -> HTTPException:
        """
        409 for business-rule rejections.
        Examples: wrong lifecycle state, insufficient stock, severe interaction.
        """
        logger.info(f"Conflict: {detail.get('code')} - {detail.get('message')}")
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )

    @staticmethod
    def service_unavailable(detail: dict, retry_after: int = 1) -> HTTPException:
        """503 for lock contention that outlived the internal retries."""
        logger.warning(f"Retryable conflict surfaced to caller: {detail.get('message')}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": str(retry_after)},
        )

    @staticmethod
    def server_error(original_error: Exception = None) -> HTTPException:
        """
        Generic 500 - logs actual error internally, hides from user.
        """
        if original_error:
            logger.error(
                f"Internal server error: {type(original_error).__name__}: {str(original_error)}",
                exc_info=original_error,
            )
        else:
            logger.error("Internal server error occurred")

        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": InvariantViolation.code,
                "message": "An internal error occurred. Please try again later.",
                "details": {},
            },
        )

    @staticmethod
    def from_domain(exc: DispensingError) -> HTTPException:
        """Map a domain error to its HTTP response by status hint."""
        if exc.http_status == status.HTTP_404_NOT_FOUND:
            return BusinessError.not_found(exc.to_dict())
        if exc.http_status == status.HTTP_409_CONFLICT:
            return BusinessError.conflict(exc.to_dict())
        if exc.http_status == status.HTTP_503_SERVICE_UNAVAILABLE:
            return BusinessError.service_unavailable(exc.to_dict())
        if exc.http_status >= 500:
            return BusinessError.server_error(exc)
        return BusinessError.bad_request(exc.to_dict())
