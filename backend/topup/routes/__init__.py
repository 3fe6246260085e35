"""Shared JSON error shaping for the API blueprints."""

from flask import jsonify

from ..exceptions import (
    AccountExists,
    DecryptionError,
    InsufficientBalance,
    InvalidState,
    NotFound,
    OperationTimeout,
    OutOfStock,
    StorageUnavailable,
    TopupError,
    TransientConflict,
    ValidationError,
)

# First match wins; subclasses before their bases.
_STATUS_BY_ERROR = (
    (NotFound, 404),
    (AccountExists, 409),
    (OutOfStock, 409),
    (InvalidState, 409),
    (InsufficientBalance, 402),
    (DecryptionError, 422),
    (ValidationError, 400),
    (TransientConflict, 503),
    (OperationTimeout, 503),
    (StorageUnavailable, 503),
)


def status_for(exc: TopupError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(exc: TopupError):
    return jsonify(exc.to_dict()), status_for(exc)
