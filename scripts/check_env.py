#!/usr/bin/env python3
"""
Check Upscaler Configuration
============================
Reports missing or malformed settings before the API is started.

Usage:
    python scripts/check_env.py [--validate-key]
"""

import argparse
import asyncio
import sys

from upscaler.config import get_settings
from upscaler.worker.upscale_client import UpscaleClient


CHECKS = [
    # (setting, required, validator, hint)
    ("stability_api_key", True, lambda v: v.startswith("sk-") and len(v) > 10,
     'Should start with "sk-"'),
    ("stripe_secret_key", True, lambda v: v.startswith(("sk_test_", "sk_live_")),
     'Should start with "sk_test_" or "sk_live_"'),
    ("stripe_webhook_secret", False, lambda v: v.startswith("whsec_"),
     'Should start with "whsec_" (optional for development)'),
    ("auth_jwt_secret", True, lambda v: len(v) >= 32,
     "Copy the JWT secret from your auth provider (at least 32 characters)"),
    ("app_url", True, lambda v: v.startswith(("http://", "https://")),
     "Should start with http:// or https://"),
]


def check_settings() -> tuple:
    settings = get_settings()
    errors = 0
    warnings = 0

    print("Upscaler configuration")
    print("-" * 50)

    for name, required, validate, hint in CHECKS:
        value = str(getattr(settings, name) or "")
        if not value:
            if required:
                print(f"✗ {name}: missing")
                print(f"    {hint}")
                errors += 1
            else:
                print(f"- {name}: not set (optional)")
        elif not validate(value):
            print(f"! {name}: unexpected format")
            print(f"    {hint}")
            warnings += 1
        else:
            print(f"✓ {name}: configured")

    if settings.stripe_secret_key.startswith("sk_live_"):
        print("! Payments are in LIVE mode")
        warnings += 1

    if settings.environment == "production" and settings.debug:
        print("! debug is enabled in production")
        warnings += 1

    return errors, warnings


def main():
    parser = argparse.ArgumentParser(description="Check Upscaler configuration")
    parser.add_argument(
        "--validate-key",
        action="store_true",
        help="Send a small test image to confirm the upscale API key is accepted",
    )
    args = parser.parse_args()

    errors, warnings = check_settings()

    if args.validate_key:
        client = UpscaleClient.from_settings()
        if not client.configured:
            print("✗ Cannot validate the upscale key: it is not set")
            errors += 1
        elif asyncio.run(client.validate_api_key()):
            print("✓ Upscale API key accepted")
        else:
            print("✗ Upscale API key rejected")
            errors += 1

    print("-" * 50)
    if errors:
        print(f"Configuration incomplete: {errors} error(s), {warnings} warning(s)")
        sys.exit(1)
    print(f"Configuration OK ({warnings} warning(s))")


if __name__ == "__main__":
    main()
