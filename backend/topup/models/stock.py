from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

# Credential types
CREDENTIAL_PIN = "PIN"
CREDENTIAL_ESIM = "ESIM_PROFILE"
CREDENTIAL_TYPES = (CREDENTIAL_PIN, CREDENTIAL_ESIM)

# Pool status
POOL_ACTIVE = "ACTIVE"
POOL_INACTIVE = "INACTIVE"
POOL_DEPLETED = "DEPLETED"
POOL_STATUSES = (POOL_ACTIVE, POOL_INACTIVE, POOL_DEPLETED)

# Item status
ITEM_AVAILABLE = "AVAILABLE"
ITEM_RESERVED = "RESERVED"
ITEM_ASSIGNED = "ASSIGNED"
ITEM_USED = "USED"
ITEM_EXPIRED = "EXPIRED"
ITEM_FAILED = "FAILED"
ITEM_STATUSES = (ITEM_AVAILABLE, ITEM_RESERVED, ITEM_ASSIGNED, ITEM_USED, ITEM_EXPIRED, ITEM_FAILED)
TERMINAL_ITEM_STATUSES = (ITEM_USED, ITEM_EXPIRED, ITEM_FAILED)

# Which pool counter an item in a given status is counted under
COUNTER_FOR_STATUS = {
    ITEM_AVAILABLE: "available_quantity",
    ITEM_RESERVED: "reserved_quantity",
    ITEM_ASSIGNED: "used_quantity",
    ITEM_USED: "used_quantity",
    ITEM_EXPIRED: "retired_quantity",
    ITEM_FAILED: "retired_quantity",
}


class StockPool(db.Model):
    """
    A batch of unique single-use credentials for one inventory bucket.

    COUNTERS: total/available/reserved/used/retired are a materialized
    aggregate of item states. They are moved incrementally in the same
    transaction as the item transition; they are never recomputed on the hot
    path. total == available + reserved + used + retired at all times.

    - used_quantity counts ASSIGNED and USED items
    - retired_quantity counts EXPIRED and FAILED items

    STATUS: DEPLETED whenever available == 0 and reserved == 0, otherwise the
    operator-chosen ACTIVE / INACTIVE.
    """
    __tablename__ = "stock_pools"
    __table_args__ = (
        db.Index("ix_stock_pools_bucket_type_status", "bucket_id", "credential_type", "status"),
        db.CheckConstraint("available_quantity >= 0", name="ck_stock_pools_available_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_stock_pools_reserved_nonneg"),
        db.CheckConstraint("used_quantity >= 0", name="ck_stock_pools_used_nonneg"),
        db.CheckConstraint("retired_quantity >= 0", name="ck_stock_pools_retired_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    credential_type = db.Column(db.String(16), nullable=False, index=True)
    bucket_id = db.Column(db.String(64), nullable=False, index=True)

    network_provider = db.Column(db.String(64), nullable=True)
    product_type = db.Column(db.String(64), nullable=True)
    unit_price_cents = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=True)
    batch_label = db.Column(db.String(128), nullable=True)
    supplier = db.Column(db.String(128), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=POOL_ACTIVE, index=True)

    total_quantity = db.Column(db.Integer, nullable=False, default=0)
    available_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    used_quantity = db.Column(db.Integer, nullable=False, default=0)
    retired_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(64), nullable=True)
    last_modified_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "StockItem",
        back_populates="pool",
        order_by="StockItem.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockPool id={self.id} bucket={self.bucket_id!r} type={self.credential_type} "
            f"available={self.available_quantity}/{self.total_quantity} status={self.status}>"
        )

    def refresh_status(self) -> None:
        """Apply the DEPLETED rule after counters moved."""
        if self.available_quantity == 0 and self.reserved_quantity == 0:
            self.status = POOL_DEPLETED
        elif self.status == POOL_DEPLETED:
            self.status = POOL_ACTIVE

    def move_counter(self, from_status: str | None, to_status: str | None) -> None:
        """Shift one unit between the counters of two item states (None = outside the pool)."""
        if from_status is not None:
            key = COUNTER_FOR_STATUS[from_status]
            setattr(self, key, getattr(self, key) - 1)
        else:
            self.total_quantity += 1
        if to_status is not None:
            key = COUNTER_FOR_STATUS[to_status]
            setattr(self, key, getattr(self, key) + 1)
        else:
            self.total_quantity -= 1
        self.refresh_status()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "credential_type": self.credential_type,
            "bucket_id": self.bucket_id,
            "network_provider": self.network_provider,
            "product_type": self.product_type,
            "unit_price_cents": self.unit_price_cents,
            "description": self.description,
            "batch_label": self.batch_label,
            "supplier": self.supplier,
            "status": self.status,
            "total_quantity": self.total_quantity,
            "available_quantity": self.available_quantity,
            "reserved_quantity": self.reserved_quantity,
            "used_quantity": self.used_quantity,
            "retired_quantity": self.retired_quantity,
            "created_by": self.created_by,
            "last_modified_by": self.last_modified_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockItem(db.Model):
    """
    One secret credential (PIN code or eSIM activation profile).

    SECRET: secret_ciphertext is always encrypted; to_dict() never includes it.
    Callers attach a masked form themselves (see stock_service).

    METADATA: price_cents / item_type / notes are the known import columns,
    validated on the way in. Anything else from the import row lands in the
    opaque `extras` string map untouched.

    STATE MACHINE:
        AVAILABLE -> RESERVED -> ASSIGNED -> USED
        AVAILABLE -> ASSIGNED
        {AVAILABLE, RESERVED, ASSIGNED} -> EXPIRED | FAILED
    Nothing returns to AVAILABLE except an explicit operator release.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.UniqueConstraint("item_id", name="uq_stock_items_item_id"),
        db.Index("ix_stock_items_pool_status_position", "pool_id", "status", "position"),
        db.Index("ix_stock_items_order", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.String(32), nullable=False)
    pool_id = db.Column(db.Integer, db.ForeignKey("stock_pools.id", ondelete="CASCADE"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    secret_ciphertext = db.Column(db.Text, nullable=False)
    serial_number = db.Column(db.String(64), nullable=True)

    price_cents = db.Column(db.Integer, nullable=True)
    item_type = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    extras = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ITEM_AVAILABLE)

    order_id = db.Column(db.String(64), nullable=True)
    claimant_id = db.Column(db.String(64), nullable=True)
    claimant_email = db.Column(db.String(255), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    pool = db.relationship("StockPool", back_populates="items")

    def __repr__(self) -> str:
        return f"<StockItem item_id={self.item_id} pool_id={self.pool_id} status={self.status}>"

    def clear_claim(self) -> None:
        self.order_id = None
        self.claimant_id = None
        self.claimant_email = None
        self.assigned_at = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "pool_id": self.pool_id,
            "position": self.position,
            "serial_number": self.serial_number,
            "price_cents": self.price_cents,
            "item_type": self.item_type,
            "notes": self.notes,
            "extras": dict(self.extras or {}),
            "status": self.status,
            "order_id": self.order_id,
            "claimant_id": self.claimant_id,
            "claimant_email": self.claimant_email,
            "assigned_at": to_utc_z(self.assigned_at),
            "used_at": to_utc_z(self.used_at),
            "expired_at": to_utc_z(self.expired_at),
            "status_reason": self.status_reason,
            "created_at": to_utc_z(self.created_at),
        }
