#!/usr/bin/env python3
"""
Create Credit Packages in Stripe
================================
Creates one product and one price per credit package and prints the
STRIPE_PRICE_IDS value to put in .env.

Usage:
    python scripts/setup_stripe_products.py [--dry-run]
"""

import argparse
import json
import sys

import stripe

from upscaler.checkout import CREDIT_PACKAGES, CreditPackage
from upscaler.config import get_settings


def create_package(package: CreditPackage) -> str:
    """Create product and price; returns the price id."""
    metadata = {"credits": str(package.credits), "packageId": package.id}
    product = stripe.Product.create(
        name=package.name,
        description=f"{package.description} - {package.credits} image upscaling credits",
        metadata=metadata,
    )
    print(f"✓ Created product: {package.name} ({product.id})")

    price = stripe.Price.create(
        product=product.id,
        unit_amount=package.unit_amount,
        currency="usd",
        metadata=metadata,
    )
    print(f"✓ Created price: ${package.price} ({price.id})")
    return price.id


def main():
    parser = argparse.ArgumentParser(description="Create credit package products in Stripe")
    parser.add_argument("--dry-run", action="store_true", help="Only list what would be created")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.stripe_secret_key and not args.dry_run:
        print("✗ STRIPE_SECRET_KEY is not set")
        sys.exit(1)
    stripe.api_key = settings.stripe_secret_key

    price_ids = {}
    for package in CREDIT_PACKAGES:
        if args.dry_run:
            print(f"[DRY RUN] Would create {package.name}: ${package.price} ({package.credits} credits)")
            continue
        try:
            price_ids[package.id] = create_package(package)
        except stripe.StripeError as e:
            print(f"✗ Failed to create {package.name}: {e.user_message or e}")

    if args.dry_run:
        return
    if not price_ids:
        print("✗ No products were created")
        sys.exit(1)

    print("-" * 50)
    print("Add this to .env:")
    print(f"STRIPE_PRICE_IDS='{json.dumps(price_ids)}'")


if __name__ == "__main__":
    main()
