from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.exceptions import (
    InsufficientInventoryError,
    NotFoundError,
    TransactionFailure,
    ValidationError,
)
from storefront.models import Product, ProductVariant
from storefront.services.locking import LockRegistry, variant_locks
from storefront.services.low_stock_alert_service import (
    LowStockAlertService,
    publish_inventory_update_event,
)


class InventoryService:
    """
    Mutations of the variant inventory ledger.

    ``decrement`` and ``restore`` never commit: they run inside the order
    finalizer's transaction, on rows the caller has already locked with
    ``lock_variants``. ``restock`` is the admin path and owns its transaction.
    """

    def __init__(
        self,
        db_session: Session,
        alert_service: Optional[LowStockAlertService] = None,
        locks: Optional[LockRegistry] = None,
    ) -> None:
        self.db = db_session
        self.alert_service = alert_service or LowStockAlertService(db_session)
        self.locks = locks if locks is not None else variant_locks
        self.logger = logging.getLogger(__name__)

    def lock_variants(self, variant_ids: Iterable[int]) -> Dict[int, ProductVariant]:
        """Row-lock variants in id order and return fresh copies keyed by id."""
        locked: Dict[int, ProductVariant] = {}
        for variant_id in sorted(set(variant_ids)):
            variant = (
                self.db.query(ProductVariant)
                .filter(ProductVariant.variantID == variant_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
            if variant is None:
                raise NotFoundError(f"Product variant {variant_id} is no longer available")
            locked[variant_id] = variant
        return locked

    def decrement(self, variant: ProductVariant, quantity: int, reason: str = "order") -> int:
        old_inventory = variant.inventory or 0
        if quantity > old_inventory:
            raise InsufficientInventoryError(
                available=old_inventory,
                requested=quantity,
                variant_id=variant.variantID,
            )

        variant.inventory = old_inventory - quantity
        self._after_change(variant, old_inventory, reason)
        return variant.inventory

    def restore(self, variant: ProductVariant, quantity: int, reason: str = "order_cancelled") -> int:
        old_inventory = variant.inventory or 0
        variant.inventory = old_inventory + quantity
        self._after_change(variant, old_inventory, reason)
        return variant.inventory

    def restock(self, product_id: int, updates: List[Dict[str, int]]) -> Product:
        """Set absolute inventory for variants of one product, all or nothing."""
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise NotFoundError("Product not found")

        owned_ids = {variant.variantID for variant in product.variants}
        invalid = [update["id"] for update in updates if update["id"] not in owned_ids]
        if invalid:
            raise ValidationError("Invalid variant IDs", {"details": invalid})
        for update in updates:
            if update["inventory"] < 0:
                raise ValidationError("Inventory must be non-negative")

        target_ids = [update["id"] for update in updates]
        with self.locks.hold(target_ids):
            try:
                locked = self.lock_variants(target_ids)
                for update in updates:
                    variant = locked[update["id"]]
                    old_inventory = variant.inventory
                    variant.inventory = update["inventory"]
                    self._after_change(variant, old_inventory, "restock")
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                self.logger.exception("Restock failed for product %s", product_id)
                raise TransactionFailure("Failed to update inventory") from exc

        self.db.refresh(product)
        self.logger.info(
            "Restocked product %s",
            product_id,
            extra={"variants": [(u["id"], u["inventory"]) for u in updates]},
        )
        return product

    def _after_change(self, variant: ProductVariant, old_inventory: int, reason: str) -> None:
        publish_inventory_update_event(
            variant_id=variant.variantID,
            old_inventory=old_inventory,
            new_inventory=variant.inventory,
            reason=reason,
        )
        if variant.inventory < old_inventory:
            self.alert_service.check_variant(variant)
        self.logger.info(
            "Inventory for variant %d: %d -> %d (%s)",
            variant.variantID,
            old_inventory,
            variant.inventory,
            reason,
        )
