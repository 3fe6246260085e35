"""
Typed failures raised by the stock engine and the balance ledgers.

Business-rule failures (OutOfStock, InsufficientBalance, NotFound, InvalidState)
are raised to the caller unchanged. Infrastructure failures are wrapped as
TransientConflict / OperationTimeout / StorageUnavailable by the concurrency helpers.
"""

from __future__ import annotations

from typing import Any


class TopupError(Exception):
    """Base class for every error this package raises on purpose."""

    code = "TOPUP_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TopupError, ValueError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"


class ConfigurationError(TopupError):
    """Missing or unusable configuration. Raised at startup."""

    code = "CONFIGURATION_ERROR"


class DecryptionError(TopupError):
    """Ciphertext is malformed or was produced under a key we no longer hold."""

    code = "DECRYPTION_ERROR"


# Lookups

class NotFound(TopupError):
    code = "NOT_FOUND"


class PoolNotFound(NotFound):
    code = "POOL_NOT_FOUND"

    def __init__(self, pool_id):
        super().__init__(f"Stock pool not found: {pool_id}", details={"pool_id": pool_id})


class ItemNotFound(NotFound):
    code = "ITEM_NOT_FOUND"

    def __init__(self, pool_id, item_id):
        super().__init__(
            f"Stock item {item_id} not found in pool {pool_id}",
            details={"pool_id": pool_id, "item_id": item_id},
        )


class AccountNotFound(NotFound):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, kind: str, retailer_id: str):
        super().__init__(
            f"No {kind.lower()} account for retailer {retailer_id}",
            details={"kind": kind, "retailer_id": retailer_id},
        )


# Business rules

class InvalidState(TopupError):
    code = "INVALID_STATE"


class AccountExists(InvalidState):
    code = "ACCOUNT_EXISTS"

    def __init__(self, kind: str, retailer_id: str):
        super().__init__(
            f"A {kind.lower()} account already exists for retailer {retailer_id}",
            details={"kind": kind, "retailer_id": retailer_id},
        )


class OutOfStock(TopupError):
    code = "OUT_OF_STOCK"

    def __init__(self, bucket_id: str, credential_type: str):
        super().__init__(
            f"No available {credential_type} stock for bucket {bucket_id}",
            details={"bucket_id": bucket_id, "credential_type": credential_type},
        )


class InsufficientBalance(TopupError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, kind: str, retailer_id: str, requested_cents: int, available_cents: int):
        super().__init__(
            f"Insufficient {kind.lower()} balance: requested {requested_cents}, available {available_cents}",
            details={
                "kind": kind,
                "retailer_id": retailer_id,
                "requested_cents": requested_cents,
                "available_cents": available_cents,
            },
        )


# Infrastructure

class TransientConflict(TopupError):
    """Concurrent writers kept colliding after every retry attempt was spent."""

    code = "TRANSIENT_CONFLICT"


class OperationTimeout(TopupError):
    """Caller deadline expired; the operation was rolled back."""

    code = "OPERATION_TIMEOUT"


class StorageUnavailable(TopupError):
    code = "STORAGE_UNAVAILABLE"
