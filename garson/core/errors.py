from __future__ import annotations


class GarsonError(Exception):
    """Base class for errors raised by the ordering engine."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InboundEventError(GarsonError):
    code = "VALIDATION_ERROR"


class ExtractionUnavailable(GarsonError):
    code = "EXTRACTION_UNAVAILABLE"


class GenerationUnavailable(GarsonError):
    code = "GENERATION_UNAVAILABLE"


class CatalogInconsistency(GarsonError):
    code = "CATALOG_INCONSISTENCY"


class ConcurrentMutationConflict(GarsonError):
    code = "CONCURRENT_MUTATION"


class IntentNotFound(GarsonError):
    code = "NOT_FOUND"


class InvalidFeedback(GarsonError):
    code = "VALIDATION_ERROR"


class OrderLocked(GarsonError):
    code = "ORDER_LOCKED"


class PaymentError(GarsonError):
    code = "PAYMENT_ERROR"


class ConversationNotFound(GarsonError):
    code = "NOT_FOUND"
