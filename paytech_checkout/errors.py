"""
Checkout error hierarchy.

Each error carries a stable ``error_code`` and the HTTP status it maps to at
the API boundary. Messages are safe to return to callers; anything sensitive
(credentials, upstream bodies) stays in the logs.
"""
from typing import Any, Dict


class CheckoutError(Exception):
    error_code = "checkout_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class InvalidRequest(CheckoutError):
    error_code = "invalid_request"
    status_code = 400


class NotFound(CheckoutError):
    error_code = "not_found"
    status_code = 404


class InvalidPrice(CheckoutError):
    error_code = "invalid_price"
    status_code = 400


class ConfigurationError(CheckoutError):
    error_code = "configuration_error"
    status_code = 500


class StorageError(CheckoutError):
    error_code = "storage_error"
    status_code = 500


class DuplicateRecordError(StorageError):
    """A write was refused by a uniqueness constraint."""

    error_code = "duplicate_record"
    status_code = 409


class UpstreamError(CheckoutError):
    error_code = "upstream_error"
    status_code = 502


class UpstreamProtocolError(UpstreamError):
    """The provider answered 2xx but without a usable redirect target."""

    error_code = "upstream_protocol_error"
