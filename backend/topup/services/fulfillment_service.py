"""
Sale fulfilment: claim stock, then charge the retailer.

WHY: The engine and the ledgers never call each other. This module is the
caller that strings them together for a retailer order, so the two halves
stay independently testable.

ORDERING: items are claimed first and debited second. If the debit fails
(insufficient balance, suspended account, conflict) every item claimed for
the order is released again and the original error is re-raised, so stock
is never handed out without a matching charge.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..exceptions import InsufficientBalance, InvalidState, TopupError, ValidationError
from ..models.ledger import ACCOUNT_ACTIVE, KIND_CREDIT, KIND_KICKBACK, LedgerTransaction
from ..models.stock import StockItem
from ..money import MAX_AMOUNT_CENTS, require_cents
from . import ledger_service, stock_service

PAYMENT_MODES = {
    "credit": KIND_CREDIT,
    "kickback": KIND_KICKBACK,
}

MAX_ORDER_QUANTITY = 100


@dataclass
class FulfilmentResult:
    order_id: str
    items: list[StockItem] = field(default_factory=list)
    transaction: LedgerTransaction | None = None

    def to_dict(self) -> dict:
        account = self.transaction.account if self.transaction is not None else None
        return {
            "order_id": self.order_id,
            "items": [stock_service.masked_item(item) for item in self.items],
            "transaction": self.transaction.to_dict() if self.transaction is not None else None,
            "account": account.to_dict() if account is not None else None,
        }


def ledger_kind_for(payment_mode: str) -> str:
    kind = PAYMENT_MODES.get((payment_mode or "").strip().lower())
    if kind is None:
        raise ValidationError(f"payment_mode must be one of {sorted(PAYMENT_MODES)}")
    return kind


def record_sale(
    retailer_id: str,
    amount_cents: int,
    order_id: str,
    payment_mode: str,
    description: str | None = None,
    *,
    timeout: float | None = None,
) -> LedgerTransaction:
    """Sale event from the storefront: debit the ledger the payment mode names."""
    kind = ledger_kind_for(payment_mode)
    return ledger_service.debit(
        kind, retailer_id, amount_cents,
        order_id=order_id, description=description, timeout=timeout,
    )


def fulfil_order(
    *,
    bucket_id: str,
    credential_type: str,
    quantity: int,
    retailer_id: str,
    unit_price_cents: int,
    payment_mode: str,
    order_id: str,
    claimant_email: str | None = None,
    timeout: float | None = None,
) -> FulfilmentResult:
    kind = ledger_kind_for(payment_mode)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_ORDER_QUANTITY:
        raise ValidationError(f"quantity must be an integer between 1 and {MAX_ORDER_QUANTITY}")
    require_cents(unit_price_cents, "unit_price_cents")
    total_cents = unit_price_cents * quantity
    if total_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"order total cannot exceed {MAX_AMOUNT_CENTS}")

    if total_cents:
        _precheck_balance(kind, retailer_id, total_cents)

    result = FulfilmentResult(order_id=order_id)
    try:
        for _ in range(quantity):
            result.items.append(
                stock_service.claim_item(
                    bucket_id=bucket_id,
                    credential_type=credential_type,
                    order_id=order_id,
                    claimant_id=retailer_id,
                    claimant_email=claimant_email,
                    timeout=timeout,
                )
            )
        if total_cents:
            result.transaction = ledger_service.debit(
                kind, retailer_id, total_cents,
                order_id=order_id,
                description=f"{quantity} x {credential_type} from {bucket_id}",
                processed_by=retailer_id,
                timeout=timeout,
            )
    except TopupError:
        _release_claimed(result.items, order_id)
        raise

    current_app.logger.info(
        "Fulfilled order %s: %s item(s) for retailer %s, %s charged to %s",
        order_id, quantity, retailer_id, total_cents, kind.lower(),
    )
    return result


def _precheck_balance(kind: str, retailer_id: str, total_cents: int) -> None:
    """Fail before touching stock when the order obviously cannot be paid. The debit re-checks under lock."""
    if ledger_service.has_sufficient_balance(kind, retailer_id, total_cents):
        return
    account = ledger_service.get_account(kind, retailer_id)
    if account.status != ACCOUNT_ACTIVE:
        raise InvalidState(
            f"{kind.capitalize()} account of retailer {retailer_id} is {account.status}",
            details={"status": account.status},
        )
    raise InsufficientBalance(kind, retailer_id, total_cents, account.available_cents)


def _release_claimed(items: list[StockItem], order_id: str) -> list[str]:
    """
    Put every claimed item back. A release that fails is logged and skipped so
    the remaining items still go back and the caller's original error survives.

    Returns the item ids that could not be released.
    """
    stuck = []
    for item in items:
        pool_id, item_id = item.pool_id, item.item_id
        try:
            stock_service.release_item(pool_id, item_id, operator_id=f"order:{order_id}")
        except TopupError:
            current_app.logger.exception(
                "Order %s failed; could not release item %s of pool %s", order_id, item_id, pool_id
            )
            stuck.append(item_id)
    if items:
        current_app.logger.warning(
            "Order %s failed; released %s of %s claimed item(s)",
            order_id, len(items) - len(stuck), len(items),
        )
    return stuck
