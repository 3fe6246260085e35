# Overview: Flask API routes for credential stock; parses input and returns JSON responses.

"""
Secret handling:
- Every listing returns masked secrets only (see stock_service.masked_item).
- POST .../reveal is the only endpoint that returns plaintext, and only for
  the order the item was assigned to.
"""

from flask import Blueprint, current_app, jsonify, request

from ..exceptions import TopupError, ValidationError
from ..services import stock_service
from ..validation import coerce_int, optional_str, optional_timeout, require_fields
from . import error_response

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


@stock_bp.post("/pools")
def import_pool_route():
    """
    Import a batch of pre-parsed rows as a new pool.

    Body: {bucket_id, credential_type, rows: [{secret, serial_number?, price?, type?, notes?, ...}],
           metadata?: {name, network_provider, product_type, unit_price, description, batch_label, supplier},
           operator_id?}
    """
    try:
        data = _payload()
        require_fields(data, "bucket_id", "credential_type", "rows")
        rows = data["rows"]
        if not isinstance(rows, list):
            raise ValidationError("rows must be a list")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        result = stock_service.import_batch(
            bucket_id=data["bucket_id"],
            credential_type=data["credential_type"],
            rows=rows,
            metadata=metadata,
            operator_id=optional_str(data, "operator_id", 64),
            timeout=optional_timeout(data),
        )
        return jsonify(result.to_dict()), 201

    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to import stock batch")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/pools")
def list_pools_route():
    try:
        pools = stock_service.list_pools(
            bucket_id=request.args.get("bucket_id"),
            credential_type=request.args.get("credential_type"),
            status=request.args.get("status"),
        )
        return jsonify({"items": [p.to_dict() for p in pools]}), 200
    except TopupError as e:
        return error_response(e)


@stock_bp.get("/pools/<int:pool_id>")
def get_pool_route(pool_id: int):
    try:
        pool = stock_service.get_pool(pool_id)
        return jsonify({
            "pool": pool.to_dict(),
            "items": stock_service.read_masked(pool_id),
        }), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load stock pool")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/pools/<int:pool_id>/decrypted")
def get_pool_decrypted_route(pool_id: int):
    """Integrity view: per-item decrypt_ok flag, secrets still masked."""
    try:
        pool = stock_service.get_pool(pool_id)
        items = stock_service.read_decrypted(pool_id)
        return jsonify({
            "pool": pool.to_dict(),
            "items": items,
            "undecryptable": sum(1 for item in items if not item["decrypt_ok"]),
        }), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify stock pool")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.patch("/pools/<int:pool_id>/status")
def set_pool_status_route(pool_id: int):
    try:
        data = _payload()
        require_fields(data, "status")
        pool = stock_service.set_pool_status(
            pool_id, str(data["status"]).upper(),
            operator_id=optional_str(data, "operator_id", 64),
            timeout=optional_timeout(data),
        )
        return jsonify({"pool": pool.to_dict()}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to change stock pool status")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.delete("/pools/<int:pool_id>")
def delete_pool_route(pool_id: int):
    try:
        force = request.args.get("force", "").lower() in ("1", "true", "yes")
        removed = stock_service.delete_pool(pool_id, force=force)
        return jsonify({"deleted_pool_id": pool_id, "deleted_items": removed}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete stock pool")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/claim")
def claim_route():
    """
    Claim one item for an order.

    Body: {bucket_id, credential_type, order_id, claimant_id?, claimant_email?, timeout?}
    Returns the item with its secret masked.
    """
    try:
        data = _payload()
        require_fields(data, "bucket_id", "credential_type", "order_id")
        item = stock_service.claim_item(
            bucket_id=str(data["bucket_id"]),
            credential_type=str(data["credential_type"]),
            order_id=str(data["order_id"]),
            claimant_id=optional_str(data, "claimant_id", 64),
            claimant_email=optional_str(data, "claimant_email", 255),
            timeout=optional_timeout(data),
        )
        return jsonify({"item": stock_service.masked_item(item)}), 201
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to claim stock item")
        return jsonify({"error": "Internal server error"}), 500


# Operator transitions: URL action -> service call
_ITEM_ACTIONS = {
    "release": lambda pool_id, item_id, data, common: stock_service.release_item(pool_id, item_id, **common),
    "reserve": lambda pool_id, item_id, data, common: stock_service.reserve_item(
        pool_id, item_id, order_id=optional_str(data, "order_id", 64), **common
    ),
    "assign": lambda pool_id, item_id, data, common: stock_service.assign_reserved_item(
        pool_id, item_id,
        order_id=optional_str(data, "order_id", 64),
        claimant_id=optional_str(data, "claimant_id", 64),
        claimant_email=optional_str(data, "claimant_email", 255),
        **common,
    ),
    "use": lambda pool_id, item_id, data, common: stock_service.mark_used(pool_id, item_id, **common),
    "expire": lambda pool_id, item_id, data, common: stock_service.expire_item(
        pool_id, item_id, reason=optional_str(data, "reason", 255), **common
    ),
    "fail": lambda pool_id, item_id, data, common: stock_service.fail_item(
        pool_id, item_id, reason=optional_str(data, "reason", 255), **common
    ),
}


@stock_bp.post("/pools/<int:pool_id>/items/<item_id>/<action>")
def item_action_route(pool_id: int, item_id: str, action: str):
    handler = _ITEM_ACTIONS.get(action)
    if handler is None:
        return jsonify({"error": f"Unknown action: {action}"}), 404
    try:
        data = _payload()
        if action == "assign":
            require_fields(data, "order_id")
        common = {
            "operator_id": optional_str(data, "operator_id", 64),
            "timeout": optional_timeout(data),
        }
        item = handler(pool_id, item_id, data, common)
        return jsonify({"item": stock_service.masked_item(item)}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to %s stock item", action)
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/pools/<int:pool_id>/items/<item_id>/reveal")
def reveal_route(pool_id: int, item_id: str):
    try:
        data = _payload()
        require_fields(data, "order_id")
        secret = stock_service.reveal_secret(pool_id, item_id, order_id=str(data["order_id"]))
        return jsonify({"item_id": item_id, "secret": secret}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reveal stock item")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.patch("/pools/<int:pool_id>/items/<item_id>")
def update_item_route(pool_id: int, item_id: str):
    try:
        data = _payload()
        operator_id = optional_str(data, "operator_id", 64)
        updates = {k: v for k, v in data.items() if k not in ("operator_id", "timeout")}
        item = stock_service.update_item(
            pool_id, item_id, updates, operator_id=operator_id, timeout=optional_timeout(data)
        )
        return jsonify({"item": stock_service.masked_item(item)}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update stock item")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.delete("/pools/<int:pool_id>/items/<item_id>")
def delete_item_route(pool_id: int, item_id: str):
    try:
        stock_service.delete_item(pool_id, item_id)
        return jsonify({"deleted_item_id": item_id}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete stock item")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/statistics")
def statistics_route():
    try:
        return jsonify(stock_service.usage_statistics()), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute stock statistics")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/low-stock")
def low_stock_route():
    try:
        raw = request.args.get("threshold")
        threshold = coerce_int(raw, "threshold") if raw is not None else None
        pools = stock_service.low_stock_pools(threshold)
        return jsonify({"items": [p.to_dict() for p in pools]}), 200
    except TopupError as e:
        return error_response(e)


@stock_bp.post("/reconcile")
def reconcile_route():
    try:
        data = _payload()
        pool_id = data.get("pool_id")
        drift = stock_service.reconcile_pool_counters(
            coerce_int(pool_id, "pool_id") if pool_id is not None else None,
            fix=bool(data.get("fix", False)),
        )
        return jsonify({"drift": drift}), 200
    except TopupError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile stock counters")
        return jsonify({"error": "Internal server error"}), 500
