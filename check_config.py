#!/usr/bin/env python3
"""
Diagnostic script to verify the reconciliation service's environment.

Usage:
    python check_config.py
"""

import os
import sys
from typing import List, Tuple

from dotenv import load_dotenv

SECRET_MARKERS = ("KEY", "SECRET", "TOKEN")


def check_env_var(name: str, required: bool = True) -> Tuple[bool, str]:
    """Return whether ``name`` is set and a printable status line."""
    value = os.getenv(name)
    if value:
        if any(marker in name for marker in SECRET_MARKERS):
            masked = value[:8] + "..." if len(value) > 8 else "***"
            return True, f"✓ {name}: {masked}"
        return True, f"✓ {name}: {value}"
    marker = "✗" if required else "○"
    return False, f"{marker} {name}: NOT SET"


def _section(title: str) -> None:
    print(title)
    print("-" * 40)


def main() -> int:
    load_dotenv()
    print("=" * 60)
    print("Task Board Billing Configuration Check")
    print("=" * 60)
    print()

    issues: List[str] = []

    _section("Stripe:")
    for var in ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]:
        ok, msg = check_env_var(var, required=True)
        print(msg)
        if not ok:
            issues.append(f"Missing required variable: {var}")

    key = os.getenv("STRIPE_SECRET_KEY", "")
    if key and not key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
        print("  ⚠ STRIPE_SECRET_KEY does not look like a Stripe secret key")
        issues.append("STRIPE_SECRET_KEY has an unexpected prefix")
    secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    if secret and not secret.startswith("whsec_"):
        print("  ⚠ STRIPE_WEBHOOK_SECRET should start with 'whsec_'")
        issues.append("STRIPE_WEBHOOK_SECRET has an unexpected prefix")

    for var in ["STRIPE_PRICE_ID", "STRIPE_TIMEOUT_SECONDS", "STRIPE_WEBHOOK_TOLERANCE"]:
        print(check_env_var(var, required=False)[1])
    print()

    _section("Database:")
    ok, msg = check_env_var("DATABASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default SQLite database")
    print()

    _section("Identity provider (Auth0):")
    for var in ["AUTH0_DOMAIN", "AUTH0_AUDIENCE", "AUTH0_ISSUER"]:
        print(check_env_var(var, required=False)[1])
    domain = os.getenv("AUTH0_DOMAIN")
    if domain and domain.startswith("https://"):
        print("  ⚠ AUTH0_DOMAIN should NOT include 'https://'")
        issues.append("AUTH0_DOMAIN includes protocol (should be just 'tenant.auth0.com')")
    print()

    _section("Frontend:")
    for var in ["FRONTEND_BASE_URL", "CORS_ORIGINS", "LOG_LEVEL"]:
        print(check_env_var(var, required=False)[1])
    print()

    print("=" * 60)
    if issues:
        print("⚠ ISSUES FOUND:")
        for issue in issues:
            print(f"  - {issue}")
        return 1

    print("✓ Configuration looks good!")
    print("  Local development: uvicorn main:app --reload")
    print("  Health endpoint:   /health")
    return 0


if __name__ == "__main__":
    sys.exit(main())
