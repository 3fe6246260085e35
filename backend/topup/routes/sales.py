# Overview: Flask API routes for retailer sales; parses input and returns JSON responses.

from flask import Blueprint, current_app, jsonify, request

from ..exceptions import TopupError, ValidationError
from ..services import fulfillment_service
from ..validation import coerce_int, optional_str, optional_timeout, require_fields
from . import error_response

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


@sales_bp.post("/")
def record_sale_route():
    """
    Sale event: debit the retailer's credit or kickback ledger.

    Body: {retailer_id, amount_cents, order_id, payment_mode: "credit" | "kickback", description?}
    """
    try:
        data = _payload()
        require_fields(data, "retailer_id", "amount_cents", "order_id", "payment_mode")
        tx = fulfillment_service.record_sale(
            str(data["retailer_id"]),
            coerce_int(data["amount_cents"], "amount_cents"),
            str(data["order_id"]),
            str(data["payment_mode"]),
            optional_str(data, "description", 255),
            timeout=optional_timeout(data),
        )
        return jsonify({"transaction": tx.to_dict(), "account": tx.account.to_dict()}), 201

    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/orders")
def fulfil_order_route():
    """
    Claim stock for an order and charge the retailer in one call.

    Body: {bucket_id, credential_type, quantity, retailer_id, unit_price_cents,
           payment_mode, order_id, claimant_email?}
    Claimed items are released again when the charge fails.
    """
    try:
        data = _payload()
        require_fields(
            data, "bucket_id", "credential_type", "quantity", "retailer_id",
            "unit_price_cents", "payment_mode", "order_id",
        )
        result = fulfillment_service.fulfil_order(
            bucket_id=str(data["bucket_id"]),
            credential_type=str(data["credential_type"]),
            quantity=coerce_int(data["quantity"], "quantity"),
            retailer_id=str(data["retailer_id"]),
            unit_price_cents=coerce_int(data["unit_price_cents"], "unit_price_cents"),
            payment_mode=str(data["payment_mode"]),
            order_id=str(data["order_id"]),
            claimant_email=optional_str(data, "claimant_email", 255),
            timeout=optional_timeout(data),
        )
        return jsonify(result.to_dict()), 201

    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to fulfil order")
        return jsonify({"error": "Internal server error"}), 500
