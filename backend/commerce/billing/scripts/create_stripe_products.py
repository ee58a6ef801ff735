"""Create Stripe products and prices in test mode.

Run once against a fresh Stripe account:
    python -m commerce.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_PRICE_PRO_MONTHLY=price_xxx
    ...
"""

import asyncio

import stripe
from stripe import StripeClient

from commerce.billing.plans import PAID_TIERS, PLAN_DESCRIPTIONS, BillingPeriod, PlanTier, get_price_cents
from commerce.config import settings

_INTERVALS = {BillingPeriod.MONTHLY: "month", BillingPeriod.YEARLY: "year"}


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    env_lines = []
    for tier in sorted(PAID_TIERS, key=lambda t: t.value):
        product = await client.v1.products.create_async(
            params={
                "name": f"LearnPath {tier.value}",
                "description": PLAN_DESCRIPTIONS[tier],
                "metadata": {"plan_tier": tier.value},
            }
        )
        print(f"Created product: {product.name} ({product.id})")

        for period, interval in _INTERVALS.items():
            amount = get_price_cents(tier, period)
            price = await client.v1.prices.create_async(
                params={
                    "product": product.id,
                    "unit_amount": amount,
                    "currency": settings.default_currency.lower(),
                    "recurring": {"interval": interval},
                    "metadata": {"plan_tier": tier.value, "billing_period": period.value},
                }
            )
            print(f"  Price: ${amount / 100:.2f}/{interval} ({price.id})")
            env_lines.append(f"STRIPE_PRICE_{tier.name}_{period.name}={price.id}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
