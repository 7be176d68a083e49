from typing import Optional
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.catalog.models import VariantPricing, VoucherCheck
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import as_utc, now
from orderflow.schema.full_schema import DiscountType, Product, ProductVariant, Voucher

logger = get_logger("orderflow.catalog")


class CatalogService:
    """Read side of the catalog tables, used to price and snapshot order lines."""

    async def get_variant_for_pricing(self, session: AsyncSession, variant_id: int) -> Optional[VariantPricing]:
        stmt = (
            select(ProductVariant.id, ProductVariant.product_id, Product.name, ProductVariant.sku,
                   ProductVariant.color_name, ProductVariant.size_name, ProductVariant.price, ProductVariant.available)
            .join(Product, Product.id == ProductVariant.product_id)
            .where(ProductVariant.id == variant_id)
        )
        res = await session.execute(stmt)
        row = res.one_or_none()
        if row is None:
            return None
        return VariantPricing(
            variant_id=int(row[0]),
            product_id=int(row[1]),
            name=row[2],
            sku=row[3],
            color_name=row[4],
            size_name=row[5],
            unit_price=int(row[6]),
            available_stock=int(row[7]),
        )


def compute_discount(voucher: Voucher, subtotal: int) -> int:
    if voucher.discount_type == DiscountType.PERCENT.value:
        amount = subtotal * int(voucher.value) // 100
    else:
        amount = int(voucher.value)
    if voucher.max_discount is not None:
        amount = min(amount, int(voucher.max_discount))
    return max(0, min(amount, subtotal))


class VoucherService:

    async def validate(self, session: AsyncSession, voucher_id: int, subtotal: int) -> VoucherCheck:
        voucher = await session.get(Voucher, voucher_id)
        if voucher is None:
            return VoucherCheck(valid=False, error=f"voucher {voucher_id} not found")
        if not voucher.is_active:
            return VoucherCheck(valid=False, error="voucher is not active")

        ts = now()
        starts_at, expires_at = as_utc(voucher.starts_at), as_utc(voucher.expires_at)
        if starts_at is not None and ts < starts_at:
            return VoucherCheck(valid=False, error="voucher is not yet valid")
        if expires_at is not None and ts >= expires_at:
            return VoucherCheck(valid=False, error="voucher has expired")
        if voucher.usage_limit is not None and voucher.used_count >= voucher.usage_limit:
            return VoucherCheck(valid=False, error="voucher usage limit reached")
        if subtotal < voucher.min_order_amount:
            return VoucherCheck(valid=False, error=f"order subtotal below voucher minimum of {voucher.min_order_amount}")

        return VoucherCheck(valid=True, discount_amount=compute_discount(voucher, subtotal))

    async def increment_usage(self, session: AsyncSession, voucher_id: int) -> bool:
        """Count one use; False when the usage limit was reached by a concurrent order."""
        stmt = (
            update(Voucher)
            .where(and_(
                Voucher.id == voucher_id,
                or_(Voucher.usage_limit.is_(None), Voucher.used_count < Voucher.usage_limit),
            ))
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        if res.rowcount == 0:
            logger.warning("voucher.usage_limit_reached", extra={"voucher_id": voucher_id})
            return False
        return True
