# Overview: Flask API routes for retailer credit and kickback ledgers; parses input and returns JSON responses.

"""
<kind> is "credit" or "kickback" (case-insensitive). Amounts are integer cents.
"""

from flask import Blueprint, current_app, jsonify, request

from ..exceptions import TopupError, ValidationError
from ..models import LedgerAccount
from ..services import ledger_service
from ..time_utils import parse_as_of
from ..validation import (
    ModelValidationPolicy,
    coerce_int,
    optional_str,
    optional_timeout,
    require_fields,
    validate_payload,
)
from . import error_response

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger/<kind>")

SETTINGS_POLICY = ModelValidationPolicy(writable_fields=set(ledger_service.SETTINGS_FIELDS))


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _tx_response(tx, status: int = 200):
    return jsonify({
        "transaction": tx.to_dict(),
        "account": tx.account.to_dict(),
    }), status


@ledger_bp.post("/accounts")
def open_account_route(kind: str):
    try:
        data = _payload()
        require_fields(data, "retailer_id", "limit_cents")
        terms = data.get("payment_terms_days")
        threshold = data.get("low_balance_threshold_cents")
        account = ledger_service.open_account(
            kind,
            str(data["retailer_id"]),
            coerce_int(data["limit_cents"], "limit_cents"),
            operator_id=optional_str(data, "operator_id", 64),
            payment_terms_days=coerce_int(terms, "payment_terms_days") if terms is not None else None,
            low_balance_threshold_cents=(
                coerce_int(threshold, "low_balance_threshold_cents") if threshold is not None else None
            ),
            notes=optional_str(data, "notes"),
            timeout=optional_timeout(data),
        )
        return jsonify({"account": account.to_dict()}), 201
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open ledger account")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/accounts")
def list_accounts_route(kind: str):
    try:
        accounts = ledger_service.list_accounts(kind, status=request.args.get("status"))
        return jsonify({"items": [a.to_dict() for a in accounts]}), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.get("/accounts/<retailer_id>")
def get_account_route(kind: str, retailer_id: str):
    try:
        account = ledger_service.get_account(kind, retailer_id)
        return jsonify({"account": account.to_dict()}), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.get("/accounts/<retailer_id>/history")
def history_route(kind: str, retailer_id: str):
    try:
        rows = ledger_service.history(kind, retailer_id)
        return jsonify({"items": [tx.to_dict() for tx in rows]}), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.get("/accounts/<retailer_id>/check")
def check_balance_route(kind: str, retailer_id: str):
    """Advisory: can this retailer afford amount_cents right now?"""
    try:
        amount = coerce_int(request.args.get("amount_cents"), "amount_cents")
        return jsonify({
            "retailer_id": retailer_id,
            "amount_cents": amount,
            "sufficient": ledger_service.has_sufficient_balance(kind, retailer_id, amount),
        }), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.post("/accounts/<retailer_id>/limit")
def adjust_limit_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        require_fields(data, "limit_cents")
        tx = ledger_service.adjust_limit(
            kind, retailer_id, coerce_int(data["limit_cents"], "limit_cents"),
            operator_id=optional_str(data, "operator_id", 64),
            reason=optional_str(data, "reason", 255),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust ledger limit")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/accounts/<retailer_id>/debit")
def debit_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        require_fields(data, "amount_cents")
        tx = ledger_service.debit(
            kind, retailer_id, coerce_int(data["amount_cents"], "amount_cents"),
            order_id=optional_str(data, "order_id", 64),
            description=optional_str(data, "description", 255),
            processed_by=optional_str(data, "operator_id", 64),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx, 201)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to debit ledger account")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/accounts/<retailer_id>/payments")
def payment_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        require_fields(data, "amount_cents")
        tx = ledger_service.receive_payment(
            kind, retailer_id, coerce_int(data["amount_cents"], "amount_cents"),
            operator_id=optional_str(data, "operator_id", 64),
            description=optional_str(data, "description", 255),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx, 201)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/accounts/<retailer_id>/refunds")
def refund_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        require_fields(data, "amount_cents")
        tx = ledger_service.refund(
            kind, retailer_id, coerce_int(data["amount_cents"], "amount_cents"),
            order_id=optional_str(data, "order_id", 64),
            operator_id=optional_str(data, "operator_id", 64),
            description=optional_str(data, "description", 255),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx, 201)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund ledger account")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/accounts/<retailer_id>/status")
def status_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        require_fields(data, "status")
        tx = ledger_service.set_status(
            kind, retailer_id, str(data["status"]).upper(),
            operator_id=optional_str(data, "operator_id", 64),
            reason=optional_str(data, "reason", 200),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to change ledger account status")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/accounts/<retailer_id>/reset")
def reset_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        tx = ledger_service.reset_usage(
            kind, retailer_id,
            operator_id=optional_str(data, "operator_id", 64),
            reason=optional_str(data, "reason", 255),
            timeout=optional_timeout(data),
        )
        return _tx_response(tx)
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reset ledger usage")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.patch("/accounts/<retailer_id>/settings")
def settings_route(kind: str, retailer_id: str):
    try:
        data = _payload()
        operator_id = optional_str(data, "operator_id", 64)
        changes = validate_payload(
            model=LedgerAccount,
            payload={k: v for k, v in data.items() if k != "operator_id"},
            policy=SETTINGS_POLICY,
            partial=True,
        )
        account = ledger_service.update_settings(kind, retailer_id, changes, operator_id=operator_id)
        return jsonify({"account": account.to_dict()}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update ledger settings")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/statistics")
def statistics_route(kind: str):
    try:
        return jsonify(ledger_service.ledger_statistics(kind)), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.get("/overdue")
def overdue_route(kind: str):
    try:
        if ledger_service.normalize_kind(kind) != "CREDIT":
            raise ValidationError("Only credit accounts can be overdue")
        try:
            as_of = parse_as_of(request.args.get("as_of"))
        except ValueError:
            raise ValidationError("as_of must be an ISO-8601 date or datetime")
        accounts = ledger_service.overdue_accounts(as_of)
        return jsonify({"items": [a.to_dict() for a in accounts]}), 200
    except TopupError as e:
        return error_response(e)


@ledger_bp.get("/low-balance")
def low_balance_route(kind: str):
    try:
        accounts = ledger_service.low_balance_accounts(kind)
        return jsonify({"items": [a.to_dict() for a in accounts]}), 200
    except TopupError as e:
        return error_response(e)
