"""License allocation.

Reserves available license rows for an order inside the caller's transaction.
Candidate rows are read with ``SELECT ... FOR UPDATE`` (a no-op on SQLite) and
claimed with a single guarded ``UPDATE ... WHERE allocated = false``, so a row
can only ever be flipped by one transaction. Rows lost to a concurrent order
are dropped and the shortfall is retried against fresh candidates.
"""
import logging
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import models

logger = logging.getLogger(__name__)

MAX_CLAIM_ROUNDS = 5


class AllocationBatch(NamedTuple):
    licenses: list
    duplicates_skipped: int = 0

    @property
    def keys(self) -> list[str]:
        return [lic.license_key for lic in self.licenses]


def _allocated_keys_in_shop(db: Session, product_id: int, keys: set) -> set:
    shop_id = db.query(models.Product.shop_id).filter(models.Product.id == product_id).scalar()
    rows = (
        db.query(models.License.license_key)
        .join(models.Product, models.Product.id == models.License.product_id)
        .filter(
            models.Product.shop_id == shop_id,
            models.License.allocated.is_(True),
            models.License.license_key.in_(keys),
        )
        .all()
    )
    return {row[0] for row in rows}


def _allocated_keys_on_order(db: Session, order_id: int) -> set:
    rows = db.query(models.License.license_key).filter(models.License.order_id == order_id).all()
    return {row[0] for row in rows}


def allocate_licenses(
    db: Session,
    product_id: int,
    order_id: int,
    quantity: int,
    settings: Optional[models.ShopSettings] = None,
    now: Optional[datetime] = None,
) -> AllocationBatch:
    """Reserve up to ``quantity`` available licenses of a product for an order.

    Returns fewer licenses than requested when the pool runs short; that is a
    normal outcome, not an error. Nothing is committed here.
    """
    if quantity <= 0:
        return AllocationBatch([])

    method = settings.license_delivery_method if settings else models.DeliveryMethod.FIFO
    unique_global = bool(settings and settings.enforce_unique_licenses)
    unique_per_order = bool(settings and settings.enforce_unique_per_order) or unique_global
    ordering = models.License.id.asc() if method == models.DeliveryMethod.FIFO else models.License.id.desc()
    now = now or datetime.now()

    claimed = []
    seen_keys = _allocated_keys_on_order(db, order_id) if unique_per_order else set()
    excluded_ids = set()
    duplicates = 0

    for _ in range(MAX_CLAIM_ROUNDS):
        needed = quantity - len(claimed)
        if needed <= 0:
            break

        query = db.query(models.License).filter(
            models.License.product_id == product_id,
            models.License.allocated.is_(False),
        )
        if excluded_ids:
            query = query.filter(models.License.id.notin_(excluded_ids))
        query = query.order_by(ordering).with_for_update(nowait=False)
        if not unique_per_order:
            query = query.limit(needed)
        candidates = query.all()
        if not candidates:
            break

        blocked = _allocated_keys_in_shop(db, product_id, {c.license_key for c in candidates}) if unique_global else set()

        picked = []
        picked_keys = set()
        for lic in candidates:
            if unique_per_order and (lic.license_key in seen_keys or lic.license_key in picked_keys or lic.license_key in blocked):
                excluded_ids.add(lic.id)
                duplicates += 1
                continue
            picked.append(lic)
            picked_keys.add(lic.license_key)
            if len(picked) == needed:
                break
        if not picked:
            break

        ids = [lic.id for lic in picked]
        result = db.execute(
            update(models.License)
            .where(models.License.id.in_(ids), models.License.allocated.is_(False))
            .values(allocated=True, order_id=order_id, allocated_at=now)
            .execution_options(synchronize_session=False)
        )
        excluded_ids.update(ids)
        if result.rowcount != len(ids):
            logger.warning(
                "Lost %d of %d licenses for product %s to a concurrent order, retrying",
                len(ids) - result.rowcount, len(ids), product_id,
            )

        # re-read so the returned objects reflect what this transaction actually claimed
        won = (
            db.query(models.License)
            .filter(models.License.id.in_(ids), models.License.order_id == order_id)
            .order_by(ordering)
            .populate_existing()
            .all()
        )
        claimed.extend(won)
        seen_keys.update(lic.license_key for lic in won)

    if len(claimed) < quantity:
        logger.warning("Only %d of %d licenses available for product %s", len(claimed), quantity, product_id)
    if duplicates:
        logger.warning("Skipped %d duplicate license keys for product %s", duplicates, product_id)

    return AllocationBatch(claimed, duplicates)
