# Overview: Service-layer operations for credential stock; import, claim, corrections and projections.

"""
Stock Allocation Invariants (authoritative)

Item state machine:
- AVAILABLE -> RESERVED | ASSIGNED | EXPIRED | FAILED
- RESERVED  -> ASSIGNED | EXPIRED | FAILED
- ASSIGNED  -> USED | EXPIRED | FAILED
- USED, EXPIRED, FAILED are terminal.
- RESERVED/ASSIGNED -> AVAILABLE only through release_item() (explicit operator correction).

Counters:
- Pool counters are moved by exactly one unit per item transition, in the same
  DB transaction as the transition. Full rescans only in reconcile_pool_counters().
- total == available + reserved + used + retired.

Claim:
- Pools matching (bucket, type, ACTIVE) are scanned oldest pool first, items by
  import position.
- The item transition is a compare-and-swap: UPDATE ... WHERE status='AVAILABLE'.
  Losing the swap means another caller took that item; the scan moves on.
- An item whose ciphertext no configured key can read is marked FAILED and skipped.

Secrets:
- Payloads are encrypted before they reach the session and never logged.
- Listings (masked and "decrypted" views alike) only ever carry mask() output.
- reveal_secret() is the single plaintext path and is bound to the claiming order.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import and_, case, func, update
from sqlalchemy.orm.exc import StaleDataError

from .. import crypto
from ..exceptions import (
    DecryptionError,
    InvalidState,
    ItemNotFound,
    OutOfStock,
    PoolNotFound,
    ValidationError,
)
from ..extensions import db
from ..models.stock import (
    COUNTER_FOR_STATUS,
    CREDENTIAL_TYPES,
    ITEM_ASSIGNED,
    ITEM_AVAILABLE,
    ITEM_EXPIRED,
    ITEM_FAILED,
    ITEM_RESERVED,
    ITEM_USED,
    POOL_ACTIVE,
    POOL_DEPLETED,
    POOL_INACTIVE,
    StockItem,
    StockPool,
)
from ..money import parse_price_tag, percentage, require_cents
from ..time_utils import utcnow
from .concurrency import commit_or_timeout, deadline_after, lock_for_update, run_with_retry

# How many AVAILABLE candidates one claim pass looks at before re-querying
CLAIM_SCAN_WINDOW = 25

ALLOWED_TRANSITIONS = {
    ITEM_AVAILABLE: {ITEM_RESERVED, ITEM_ASSIGNED, ITEM_EXPIRED, ITEM_FAILED},
    ITEM_RESERVED: {ITEM_ASSIGNED, ITEM_EXPIRED, ITEM_FAILED},
    ITEM_ASSIGNED: {ITEM_USED, ITEM_EXPIRED, ITEM_FAILED},
    ITEM_USED: set(),
    ITEM_EXPIRED: set(),
    ITEM_FAILED: set(),
}

RELEASABLE_STATUSES = (ITEM_RESERVED, ITEM_ASSIGNED)
UNDELETABLE_STATUSES = (ITEM_ASSIGNED, ITEM_USED)

POOL_METADATA_FIELDS = {
    "name",
    "network_provider",
    "product_type",
    "unit_price",
    "description",
    "batch_label",
    "supplier",
}

ITEM_UPDATE_FIELDS = {"price", "type", "notes", "serial_number"}


# =============================================================================
# IMPORT ROWS
# =============================================================================

@dataclass
class ImportRow:
    """
    One pre-parsed import row.

    Known columns are typed fields; every other column is carried verbatim in
    `extras` (e.g. activation_url / qr_code_url for eSIM profiles).
    """
    secret: str
    serial_number: str | None = None
    price_cents: int | None = None
    item_type: str | None = None
    notes: str | None = None
    extras: dict[str, str] = field(default_factory=dict)


@dataclass
class ImportResult:
    pool: StockPool
    imported: int
    duplicate_rows: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "pool": self.pool.to_dict(),
            "imported": self.imported,
            "duplicate_rows": list(self.duplicate_rows),
        }


def _clean_str(value, field_name: str, max_len: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_len is not None and len(text) > max_len:
        raise ValidationError(f"{field_name} exceeds max length {max_len}")
    return text


def normalize_import_row(raw, row_number: int) -> ImportRow:
    if isinstance(raw, ImportRow):
        row = raw
    elif isinstance(raw, dict):
        data = dict(raw)
        secret = data.pop("secret", None)
        if secret is None:
            secret = data.pop("secret_payload", None)
        item_type = data.pop("type", None)
        if item_type is None:
            item_type = data.pop("item_type", None)
        row = ImportRow(
            secret=secret,
            serial_number=data.pop("serial_number", None),
            price_cents=parse_price_tag(data.pop("price", None)),
            item_type=item_type,
            notes=data.pop("notes", None),
            extras={str(k): "" if v is None else str(v) for k, v in data.items()},
        )
    else:
        raise ValidationError(f"Row {row_number}: expected a mapping")

    secret = "" if row.secret is None else str(row.secret).strip()
    if not secret:
        raise ValidationError(f"Row {row_number}: secret payload is required")
    row.secret = secret
    if row.price_cents is not None:
        row.price_cents = require_cents(row.price_cents, f"Row {row_number}: price_cents")
    row.serial_number = _clean_str(row.serial_number, "serial_number", 64)
    row.item_type = _clean_str(row.item_type, "type", 64)
    row.notes = _clean_str(row.notes, "notes")
    return row


# =============================================================================
# LOOKUPS
# =============================================================================

def _require_credential_type(credential_type: str) -> str:
    if credential_type not in CREDENTIAL_TYPES:
        raise ValidationError(f"credential_type must be one of {list(CREDENTIAL_TYPES)}")
    return credential_type


def get_pool(pool_id: int, *, lock: bool = False) -> StockPool:
    query = db.session.query(StockPool).filter_by(id=pool_id)
    if lock:
        query = lock_for_update(query)
    pool = query.first()
    if pool is None:
        raise PoolNotFound(pool_id)
    return pool


def get_item(pool_id: int, item_id: str) -> StockItem:
    item = db.session.query(StockItem).filter_by(pool_id=pool_id, item_id=item_id).first()
    if item is None:
        raise ItemNotFound(pool_id, item_id)
    return item


def list_pools(
    bucket_id: str | None = None,
    credential_type: str | None = None,
    status: str | None = None,
) -> list[StockPool]:
    query = db.session.query(StockPool)
    if bucket_id is not None:
        query = query.filter(StockPool.bucket_id == bucket_id)
    if credential_type is not None:
        query = query.filter(StockPool.credential_type == _require_credential_type(credential_type))
    if status is not None:
        query = query.filter(StockPool.status == status)
    return query.order_by(StockPool.id).all()


# =============================================================================
# IMPORT
# =============================================================================

def import_batch(
    *,
    bucket_id: str,
    credential_type: str,
    rows,
    metadata: dict | None = None,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> ImportResult:
    """
    Create a pool from a batch of pre-parsed rows.

    Every payload is encrypted before it is added to the session. Duplicate
    payloads inside the batch are reported in ImportResult.duplicate_rows but
    still stored; global uniqueness is the importer's job.

    Raises:
        ValidationError: empty batch, missing payloads, bad metadata
    """
    _require_credential_type(credential_type)
    bucket_id = _clean_str(bucket_id, "bucket_id", 64)
    if bucket_id is None:
        raise ValidationError("bucket_id is required")

    metadata = dict(metadata or {})
    unknown = set(metadata) - POOL_METADATA_FIELDS
    if unknown:
        raise ValidationError(f"Unknown pool metadata: {', '.join(sorted(unknown))}")

    normalized = [normalize_import_row(raw, n) for n, raw in enumerate(rows or [], start=1)]
    if not normalized:
        raise ValidationError("Import batch contains no rows")

    seen = Counter()
    duplicate_rows = []
    for n, row in enumerate(normalized, start=1):
        seen[row.secret] += 1
        if seen[row.secret] > 1:
            duplicate_rows.append(n)

    batch_label = _clean_str(metadata.get("batch_label"), "batch_label", 128)
    name = _clean_str(metadata.get("name"), "name", 255) or batch_label or f"{bucket_id} - {credential_type} Pool"
    deadline = deadline_after(timeout)

    def _op():
        pool = StockPool(
            name=name,
            credential_type=credential_type,
            bucket_id=bucket_id,
            network_provider=_clean_str(metadata.get("network_provider"), "network_provider", 64),
            product_type=_clean_str(metadata.get("product_type"), "product_type", 64),
            unit_price_cents=parse_price_tag(metadata.get("unit_price")),
            description=_clean_str(metadata.get("description"), "description"),
            batch_label=batch_label or name,
            supplier=_clean_str(metadata.get("supplier"), "supplier", 128),
            status=POOL_ACTIVE,
            total_quantity=len(normalized),
            available_quantity=len(normalized),
            reserved_quantity=0,
            used_quantity=0,
            retired_quantity=0,
            created_by=operator_id,
            last_modified_by=operator_id,
        )
        for position, row in enumerate(normalized):
            pool.items.append(
                StockItem(
                    item_id=uuid.uuid4().hex,
                    position=position,
                    secret_ciphertext=crypto.encrypt(row.secret),
                    serial_number=row.serial_number,
                    price_cents=row.price_cents if row.price_cents is not None else pool.unit_price_cents,
                    item_type=row.item_type or credential_type,
                    notes=row.notes if row.notes is not None else pool.description,
                    extras=row.extras or None,
                    status=ITEM_AVAILABLE,
                )
            )
        db.session.add(pool)
        commit_or_timeout(deadline)
        return pool

    pool = run_with_retry(_op, deadline=deadline)
    if duplicate_rows:
        current_app.logger.warning(
            "Import into pool %s stored %s duplicate payload(s) (rows %s)",
            pool.id, len(duplicate_rows), duplicate_rows,
        )
    current_app.logger.info(
        "Imported %s %s item(s) into pool %s for bucket %s",
        len(normalized), credential_type, pool.id, bucket_id,
    )
    return ImportResult(pool=pool, imported=len(normalized), duplicate_rows=duplicate_rows)


# =============================================================================
# CLAIM (compare-and-swap)
# =============================================================================

def _counter_shift_values(from_status: str, to_status: str) -> tuple[dict, int, int]:
    """Column -> SQL expression for a one-unit counter move, plus available/reserved deltas."""
    from_key = COUNTER_FOR_STATUS[from_status]
    to_key = COUNTER_FOR_STATUS[to_status]
    deltas = Counter()
    deltas[from_key] -= 1
    deltas[to_key] += 1
    values = {
        key: getattr(StockPool, key) + delta
        for key, delta in deltas.items()
        if delta != 0
    }
    return values, deltas["available_quantity"], deltas["reserved_quantity"]


def _cas_item(item_pk: int, pool_id: int, from_status: str, to_status: str, item_values: dict) -> bool:
    """
    Transition one item only if its stored status still equals from_status, and
    move the pool counters in the same transaction.

    Returns False when another writer got there first.
    """
    result = db.session.execute(
        update(StockItem)
        .where(StockItem.id == item_pk, StockItem.status == from_status)
        .values(status=to_status, **item_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    counter_values, d_available, d_reserved = _counter_shift_values(from_status, to_status)
    new_available = StockPool.available_quantity + d_available
    new_reserved = StockPool.reserved_quantity + d_reserved
    pool_result = db.session.execute(
        update(StockPool)
        .where(StockPool.id == pool_id, StockPool.status == POOL_ACTIVE)
        .values(
            status=case(
                (and_(new_available == 0, new_reserved == 0), POOL_DEPLETED),
                else_=StockPool.status,
            ),
            version_id=StockPool.version_id + 1,
            updated_at=utcnow(),
            **counter_values,
        )
        .execution_options(synchronize_session=False)
    )
    if pool_result.rowcount != 1:
        # Pool was deactivated or removed under us; retry the claim from scratch.
        raise StaleDataError(f"stock pool {pool_id} changed during claim")
    return True


def _secret_is_readable(ciphertext: str) -> bool:
    try:
        crypto.decrypt(ciphertext)
    except DecryptionError:
        return False
    return True


def claim_item(
    *,
    bucket_id: str,
    credential_type: str,
    order_id: str,
    claimant_id: str | None = None,
    claimant_email: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    """
    Claim exactly one AVAILABLE item of the given type for an order.

    At-most-once issuance: the AVAILABLE -> ASSIGNED move is a conditional
    UPDATE, so two concurrent callers can never both win the same item.

    Raises:
        OutOfStock: no claimable item in any ACTIVE matching pool
        TransientConflict / OperationTimeout: see concurrency.run_with_retry
    """
    _require_credential_type(credential_type)
    order_id = _clean_str(order_id, "order_id", 64)
    if order_id is None:
        raise ValidationError("order_id is required")
    deadline = deadline_after(timeout)

    def _op():
        pool_ids = [
            row.id
            for row in db.session.query(StockPool.id)
            .filter(
                StockPool.bucket_id == bucket_id,
                StockPool.credential_type == credential_type,
                StockPool.status == POOL_ACTIVE,
            )
            .order_by(StockPool.id)
            .all()
        ]

        for pool_id in pool_ids:
            while True:
                candidates = (
                    db.session.query(StockItem.id, StockItem.secret_ciphertext)
                    .filter(StockItem.pool_id == pool_id, StockItem.status == ITEM_AVAILABLE)
                    .order_by(StockItem.position)
                    .limit(CLAIM_SCAN_WINDOW)
                    .all()
                )
                if not candidates:
                    break

                for item_pk, ciphertext in candidates:
                    now = utcnow()
                    if not _secret_is_readable(ciphertext):
                        if _cas_item(item_pk, pool_id, ITEM_AVAILABLE, ITEM_FAILED, {
                            "status_reason": "payload could not be decrypted",
                        }):
                            current_app.logger.error(
                                "Stock item pk=%s in pool %s is undecryptable; marked FAILED", item_pk, pool_id
                            )
                        continue

                    won = _cas_item(item_pk, pool_id, ITEM_AVAILABLE, ITEM_ASSIGNED, {
                        "order_id": order_id,
                        "claimant_id": claimant_id,
                        "claimant_email": claimant_email,
                        "assigned_at": now,
                    })
                    if won:
                        commit_or_timeout(deadline)
                        return db.session.get(StockItem, item_pk)

        # Undecryptable items marked FAILED above still need to be persisted.
        commit_or_timeout(deadline)
        raise OutOfStock(bucket_id, credential_type)

    item = run_with_retry(_op, deadline=deadline)
    current_app.logger.info(
        "Claimed stock item %s from pool %s for order %s", item.item_id, item.pool_id, order_id
    )
    return item


# =============================================================================
# OPERATOR TRANSITIONS
# =============================================================================

def _transition(
    pool_id: int,
    item_id: str,
    to_status: str,
    *,
    operator_id: str | None,
    timeout: float | None,
    apply=None,
    allow_release: bool = False,
) -> StockItem:
    deadline = deadline_after(timeout)

    def _op():
        pool = get_pool(pool_id, lock=True)
        item = get_item(pool_id, item_id)
        from_status = item.status

        if allow_release:
            if from_status not in RELEASABLE_STATUSES:
                raise InvalidState(
                    f"Only RESERVED or ASSIGNED items can be released (item is {from_status})",
                    details={"item_id": item_id, "status": from_status},
                )
        elif to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidState(
                f"Cannot move item from {from_status} to {to_status}",
                details={"item_id": item_id, "from": from_status, "to": to_status},
            )

        item.status = to_status
        if apply is not None:
            apply(item)
        pool.move_counter(from_status, to_status)
        pool.last_modified_by = operator_id
        commit_or_timeout(deadline)
        return item

    item = run_with_retry(_op, deadline=deadline)
    current_app.logger.info(
        "Stock item %s in pool %s moved to %s by %s", item_id, pool_id, to_status, operator_id or "system"
    )
    return item


def release_item(pool_id: int, item_id: str, *, operator_id: str | None = None, timeout: float | None = None) -> StockItem:
    """Return a mis-assigned RESERVED/ASSIGNED item to AVAILABLE and restore the available counter."""
    def _apply(item: StockItem):
        item.clear_claim()
        item.status_reason = f"released by {operator_id or 'operator'}"

    return _transition(
        pool_id, item_id, ITEM_AVAILABLE,
        operator_id=operator_id, timeout=timeout, apply=_apply, allow_release=True,
    )


def reserve_item(
    pool_id: int,
    item_id: str,
    *,
    order_id: str | None = None,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    def _apply(item: StockItem):
        item.order_id = order_id

    return _transition(pool_id, item_id, ITEM_RESERVED, operator_id=operator_id, timeout=timeout, apply=_apply)


def assign_reserved_item(
    pool_id: int,
    item_id: str,
    *,
    order_id: str,
    claimant_id: str | None = None,
    claimant_email: str | None = None,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    def _apply(item: StockItem):
        item.order_id = order_id
        item.claimant_id = claimant_id
        item.claimant_email = claimant_email
        item.assigned_at = utcnow()

    item = get_item(pool_id, item_id)
    if item.status != ITEM_RESERVED:
        raise InvalidState(f"Item {item_id} is {item.status}, not RESERVED")
    return _transition(pool_id, item_id, ITEM_ASSIGNED, operator_id=operator_id, timeout=timeout, apply=_apply)


def mark_used(pool_id: int, item_id: str, *, operator_id: str | None = None, timeout: float | None = None) -> StockItem:
    def _apply(item: StockItem):
        item.used_at = utcnow()

    return _transition(pool_id, item_id, ITEM_USED, operator_id=operator_id, timeout=timeout, apply=_apply)


def expire_item(
    pool_id: int,
    item_id: str,
    *,
    reason: str | None = None,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    def _apply(item: StockItem):
        item.expired_at = utcnow()
        item.status_reason = reason

    return _transition(pool_id, item_id, ITEM_EXPIRED, operator_id=operator_id, timeout=timeout, apply=_apply)


def fail_item(
    pool_id: int,
    item_id: str,
    *,
    reason: str | None = None,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    def _apply(item: StockItem):
        item.status_reason = reason

    return _transition(pool_id, item_id, ITEM_FAILED, operator_id=operator_id, timeout=timeout, apply=_apply)


def set_pool_status(pool_id: int, status: str, *, operator_id: str | None = None, timeout: float | None = None) -> StockPool:
    """
    Operator switch between ACTIVE and INACTIVE.

    DEPLETED is derived from counters and cannot be set; a pool with nothing
    available or reserved stays DEPLETED whichever status is requested.
    """
    if status not in (POOL_ACTIVE, POOL_INACTIVE):
        raise ValidationError("Pool status can only be set to ACTIVE or INACTIVE")
    deadline = deadline_after(timeout)

    def _op():
        pool = get_pool(pool_id, lock=True)
        pool.status = status
        pool.refresh_status()
        pool.last_modified_by = operator_id
        commit_or_timeout(deadline)
        return pool

    pool = run_with_retry(_op, deadline=deadline)
    current_app.logger.info("Stock pool %s set to %s by %s", pool_id, pool.status, operator_id or "system")
    return pool


# =============================================================================
# METADATA / DELETION
# =============================================================================

def update_item(
    pool_id: int,
    item_id: str,
    updates: dict,
    *,
    operator_id: str | None = None,
    timeout: float | None = None,
) -> StockItem:
    """
    Metadata-only correction (price, type, notes, serial_number).

    Unknown keys are kept in the item's extras bag. Never touches status or counters.
    """
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("No updates supplied")

    patch = {}
    extras_patch = {}
    for key, value in updates.items():
        if key == "price":
            patch["price_cents"] = parse_price_tag(value)
        elif key == "type":
            patch["item_type"] = _clean_str(value, "type", 64)
        elif key == "notes":
            patch["notes"] = _clean_str(value, "notes")
        elif key == "serial_number":
            patch["serial_number"] = _clean_str(value, "serial_number", 64)
        else:
            extras_patch[str(key)] = "" if value is None else str(value)
    deadline = deadline_after(timeout)

    def _op():
        pool = get_pool(pool_id)
        item = get_item(pool_id, item_id)
        for key, value in patch.items():
            setattr(item, key, value)
        if extras_patch:
            merged = dict(item.extras or {})
            merged.update(extras_patch)
            item.extras = merged
        pool.last_modified_by = operator_id
        commit_or_timeout(deadline)
        return item

    return run_with_retry(_op, deadline=deadline)


def delete_item(pool_id: int, item_id: str, *, operator_id: str | None = None, timeout: float | None = None) -> None:
    """Remove one item. Items already handed out (ASSIGNED/USED) cannot be deleted."""
    deadline = deadline_after(timeout)

    def _op():
        pool = get_pool(pool_id, lock=True)
        item = get_item(pool_id, item_id)
        if item.status in UNDELETABLE_STATUSES:
            raise InvalidState(
                f"Cannot delete item: it is already {item.status}",
                details={"item_id": item_id, "status": item.status},
            )
        pool.move_counter(item.status, None)
        pool.last_modified_by = operator_id
        pool.items.remove(item)
        commit_or_timeout(deadline)

    run_with_retry(_op, deadline=deadline)
    current_app.logger.info("Deleted stock item %s from pool %s", item_id, pool_id)


def delete_pool(pool_id: int, *, force: bool = False, timeout: float | None = None) -> int:
    """
    Delete a pool and its items. Refused while any item is ASSIGNED or USED
    unless force=True (test/reset flows). Returns the number of items removed.
    """
    deadline = deadline_after(timeout)

    def _op():
        pool = get_pool(pool_id, lock=True)
        if not force and pool.used_quantity > 0:
            raise InvalidState(
                f"Cannot delete pool: {pool.used_quantity} items are already assigned or used",
                details={"pool_id": pool_id, "used_quantity": pool.used_quantity},
            )
        removed = pool.total_quantity
        db.session.delete(pool)
        commit_or_timeout(deadline)
        return removed

    removed = run_with_retry(_op, deadline=deadline)
    current_app.logger.info("Deleted stock pool %s (%s items)", pool_id, removed)
    return removed


def delete_all_pools() -> int:
    """Irreversible wipe of every pool and item. Returns the number of pools deleted."""
    def _op():
        count = db.session.query(StockPool).count()
        db.session.query(StockItem).delete(synchronize_session=False)
        db.session.query(StockPool).delete(synchronize_session=False)
        db.session.commit()
        return count

    count = run_with_retry(_op)
    current_app.logger.warning("Deleted all %s stock pools", count)
    return count


# =============================================================================
# PROJECTIONS
# =============================================================================

def _masked_secret(item: StockItem) -> tuple[str, bool]:
    try:
        return crypto.mask(crypto.decrypt(item.secret_ciphertext)), True
    except DecryptionError:
        return crypto.mask(None), False


def masked_item(item: StockItem) -> dict:
    data = item.to_dict()
    data["secret"], _ = _masked_secret(item)
    return data


def read_masked(pool_id: int) -> list[dict]:
    """General listing: metadata plus masked secret."""
    pool = get_pool(pool_id)
    return [masked_item(item) for item in pool.items]


def read_decrypted(pool_id: int) -> list[dict]:
    """
    Privileged per-item view.

    The payload is decrypted to verify it, but the secret is still returned
    masked; decrypt_ok reports items whose ciphertext no configured key reads.
    """
    pool = get_pool(pool_id)
    rows = []
    for item in pool.items:
        data = item.to_dict()
        data["secret"], data["decrypt_ok"] = _masked_secret(item)
        rows.append(data)
    return rows


def reveal_secret(pool_id: int, item_id: str, *, order_id: str) -> str:
    """
    Plaintext for the fulfilment/notification path only.

    The item must have been handed to `order_id` (ASSIGNED or USED).
    """
    item = get_item(pool_id, item_id)
    if item.status not in (ITEM_ASSIGNED, ITEM_USED) or item.order_id != order_id:
        raise InvalidState(
            "Secret can only be revealed for the order the item was assigned to",
            details={"item_id": item_id, "order_id": order_id},
        )
    plaintext = crypto.decrypt(item.secret_ciphertext)
    current_app.logger.info("Revealed secret of item %s for order %s", item_id, order_id)
    return plaintext


# =============================================================================
# REPORTING / REPAIR
# =============================================================================

def usage_statistics(low_stock_threshold: int | None = None) -> dict:
    rows = (
        db.session.query(
            StockPool.credential_type,
            func.count(StockPool.id),
            func.coalesce(func.sum(StockPool.total_quantity), 0),
            func.coalesce(func.sum(StockPool.available_quantity), 0),
            func.coalesce(func.sum(StockPool.used_quantity), 0),
            func.coalesce(func.sum(StockPool.reserved_quantity), 0),
            func.coalesce(func.sum(StockPool.retired_quantity), 0),
        )
        .group_by(StockPool.credential_type)
        .all()
    )
    by_type = {
        ctype: {
            "pools": 0, "total": 0, "available": 0, "used": 0, "reserved": 0, "retired": 0,
            "usage_percentage": "0.00",
        }
        for ctype in CREDENTIAL_TYPES
    }
    pool_count = 0
    for ctype, pools, total, available, used, reserved, retired in rows:
        pool_count += pools
        by_type[ctype] = {
            "pools": pools,
            "total": int(total),
            "available": int(available),
            "used": int(used),
            "reserved": int(reserved),
            "retired": int(retired),
            "usage_percentage": str(percentage(int(used), int(total))),
        }

    low = low_stock_pools(low_stock_threshold)
    return {
        "total_pools": pool_count,
        "by_type": by_type,
        "low_stock_alerts": len(low),
        "low_stock_pools": [
            {
                "id": p.id,
                "name": p.name,
                "bucket_id": p.bucket_id,
                "credential_type": p.credential_type,
                "available_quantity": p.available_quantity,
                "total_quantity": p.total_quantity,
            }
            for p in low
        ],
    }


def low_stock_pools(threshold: int | None = None) -> list[StockPool]:
    """ACTIVE or DEPLETED pools whose available count is at or below the threshold."""
    if threshold is None:
        threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 10)
    return (
        db.session.query(StockPool)
        .filter(
            StockPool.status.in_([POOL_ACTIVE, POOL_DEPLETED]),
            StockPool.available_quantity <= threshold,
        )
        .order_by(StockPool.available_quantity, StockPool.id)
        .all()
    )


def reconcile_pool_counters(pool_id: int | None = None, *, fix: bool = False) -> list[dict]:
    """
    Repair tool: recount item states and compare with the materialized counters.

    Returns one entry per drifted pool. With fix=True the counters (and the
    DEPLETED status) are rewritten from the recount.
    """
    def _op():
        query = db.session.query(StockPool)
        if pool_id is not None:
            query = query.filter(StockPool.id == pool_id)
        pools = lock_for_update(query.order_by(StockPool.id)).all()
        if pool_id is not None and not pools:
            raise PoolNotFound(pool_id)

        drift = []
        for pool in pools:
            counts = dict(
                db.session.query(StockItem.status, func.count(StockItem.id))
                .filter(StockItem.pool_id == pool.id)
                .group_by(StockItem.status)
                .all()
            )
            expected = {
                "total_quantity": sum(counts.values()),
                "available_quantity": counts.get(ITEM_AVAILABLE, 0),
                "reserved_quantity": counts.get(ITEM_RESERVED, 0),
                "used_quantity": counts.get(ITEM_ASSIGNED, 0) + counts.get(ITEM_USED, 0),
                "retired_quantity": counts.get(ITEM_EXPIRED, 0) + counts.get(ITEM_FAILED, 0),
            }
            actual = {key: getattr(pool, key) for key in expected}
            if actual != expected:
                drift.append({"pool_id": pool.id, "stored": actual, "counted": expected})
                if fix:
                    for key, value in expected.items():
                        setattr(pool, key, value)
                    pool.refresh_status()
        if fix and drift:
            db.session.commit()
        else:
            db.session.rollback()
        return drift

    drift = run_with_retry(_op)
    if drift:
        current_app.logger.warning("Counter drift in %s pool(s)%s", len(drift), " (fixed)" if fix else "")
    return drift


def rotate_pool_secrets(batch_size: int = 500) -> dict:
    """
    Re-encrypt every payload that is not under the primary key.

    Items no configured key can read are counted and left untouched.
    """
    rotated = 0
    unreadable = 0
    last_pk = 0
    while True:
        items = (
            db.session.query(StockItem)
            .filter(StockItem.id > last_pk)
            .order_by(StockItem.id)
            .limit(batch_size)
            .all()
        )
        if not items:
            break
        for item in items:
            last_pk = item.id
            if crypto.is_current(item.secret_ciphertext):
                continue
            try:
                item.secret_ciphertext = crypto.rotate(item.secret_ciphertext)
                rotated += 1
            except DecryptionError:
                unreadable += 1
        db.session.commit()

    current_app.logger.info("Key rotation: %s payload(s) re-encrypted, %s unreadable", rotated, unreadable)
    return {"rotated": rotated, "unreadable": unreadable}
