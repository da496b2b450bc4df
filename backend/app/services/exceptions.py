# Overview: Domain error taxonomy shared by every service in the core.

"""
POS CORE SERVICE ERRORS

Every error carries `retry_safe`:
- True: nothing value-changing was recorded, the caller may retry as-is.
- False: a value-changing record already exists; check the idempotency key
  (sale id, correlation id, return id, GRN number) before retrying.

`http_status` is the status code routes answer with.
"""


class PosCoreError(Exception):
    """Base exception for all POS core failures."""

    http_status = 400
    retry_safe = True

    def __init__(self, message: str, *, retry_safe: bool | None = None):
        super().__init__(message)
        if retry_safe is not None:
            self.retry_safe = retry_safe

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "error_type": type(self).__name__,
            "retry_safe": self.retry_safe,
        }


class ValidationError(PosCoreError):
    """Malformed input: bad phone, non-positive amount, over-receipt."""


class NotFoundError(PosCoreError):
    """Referenced document or entity does not exist."""

    http_status = 404


class StateError(PosCoreError):
    """Operation is invalid for the document's current status."""

    http_status = 409


class InsufficientStockError(PosCoreError):
    """An outbound movement would take a stock counter below zero."""

    http_status = 409

    def __init__(self, message: str, *, product_id: int | None = None, available: int | None = None):
        super().__init__(message)
        self.product_id = product_id
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["product_id"] = self.product_id
        data["available"] = self.available
        return data


class ConcurrentStockConflictError(PosCoreError):
    """Optimistic counter update kept losing the race; retry the whole operation."""

    http_status = 409


class GatewayRejectedError(PosCoreError):
    """Provider refused the push request (non-success response code)."""

    http_status = 502


class GatewayUnavailableError(PosCoreError):
    """Provider could not be reached or did not answer the push request in time."""

    http_status = 503


class AlreadyProcessedError(PosCoreError):
    """
    Benign no-op: the document already reached the requested terminal state.

    Routes answer 200 with `already_processed: true`.
    """

    http_status = 200
    retry_safe = False
