"""
Seed script to populate the subscription_plans table.

Creates missing tables, then inserts the Monthly, Per Term and Yearly plans when
absent. Existing plans are left alone: a price change is a new plan plus
deactivation of the old one.
"""
import asyncio
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.config import settings
from schoolpay.core.enums import PLAN_NAMES, PlanType
from schoolpay.core.logging import configure_logging, get_logger
from schoolpay.core.models import SubscriptionPlan
from schoolpay.db.session import AsyncSessionLocal, Base, engine

logger = get_logger(__name__)

# Plan definitions: (plan_type, amount, duration_days, description)
DEFAULT_PLANS: List[Tuple[PlanType, Decimal, int, str]] = [
    (PlanType.MONTHLY, Decimal("15000.00"), 30, "Pay as you go - Monthly subscription"),
    (PlanType.TERM, Decimal("40000.00"), 90, "Perfect for academic terms - 3 months coverage"),
    (PlanType.YEARLY, Decimal("150000.00"), 365, "Best value - Full year coverage"),
]


async def seed_subscription_plans(db: AsyncSession) -> int:
    """Insert missing default plans. Returns the number created."""
    created = 0
    for plan_type, amount, duration_days, description in DEFAULT_PLANS:
        name = PLAN_NAMES[plan_type]
        result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == name))
        if result.scalar_one_or_none():
            continue
        db.add(
            SubscriptionPlan(
                name=name,
                plan_type=plan_type.value,
                amount=amount,
                duration_days=duration_days,
                currency=settings.currency,
                description=description,
                is_active=True,
            )
        )
        created += 1
    await db.commit()
    logger.info("subscription_plans_seeded", extra={"created": created, "total": len(DEFAULT_PLANS)})
    return created


async def main() -> None:
    """Main entry point for the seed script."""
    configure_logging()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as db:
        try:
            created = await seed_subscription_plans(db)
        except Exception:
            await db.rollback()
            logger.exception("subscription_plan_seeding_failed")
            raise
    print(f"Subscription plans created: {created}")


if __name__ == "__main__":
    asyncio.run(main())
