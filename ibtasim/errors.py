"""
Domain exceptions.

Every error carries the HTTP status an API route should answer with; the
JSON blueprints map them through a single error handler. Webhook routes own
their status codes and never let these escape.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class IbtasimError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.status_code, "type": self.code, "message": self.message}
        if self.details:
            out.update(self.details)
        return out


# ----------------------------
# Client errors (4xx)
# ----------------------------
class ClientError(IbtasimError):
    status_code = 400
    code = "bad_request"


class MissingSignatureHeaders(ClientError):
    code = "missing_signature_headers"


class InvalidPayload(ClientError):
    code = "invalid_payload"


class ValidationError(ClientError):
    code = "validation_error"


class InvalidSignature(ClientError):
    status_code = 401
    code = "invalid_signature"


# ----------------------------
# Configuration (500)
# ----------------------------
class ConfigurationError(IbtasimError):
    status_code = 500
    code = "configuration_error"


# ----------------------------
# Business logic
# ----------------------------
class BusinessLogicError(IbtasimError):
    status_code = 409
    code = "business_logic_error"


class NotFound(BusinessLogicError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[Any] = None) -> None:
        super().__init__(f"{entity} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class DonationNotFound(NotFound):
    def __init__(self, donation_id: Any) -> None:
        super().__init__("donation", donation_id)


class InvalidTransition(BusinessLogicError):
    code = "invalid_transition"


class ConcurrentUpdate(BusinessLogicError):
    code = "concurrent_update"


class ProviderError(BusinessLogicError):
    status_code = 502
    code = "provider_error"


__all__ = [
    "IbtasimError",
    "ClientError",
    "MissingSignatureHeaders",
    "InvalidPayload",
    "ValidationError",
    "InvalidSignature",
    "ConfigurationError",
    "BusinessLogicError",
    "NotFound",
    "DonationNotFound",
    "InvalidTransition",
    "ConcurrentUpdate",
    "ProviderError",
]
