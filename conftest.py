"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's conftest.py.

Environment defaults are applied here, before Django reads its settings,
so the suite runs without a .env file: SQLite in memory, no SSL redirect,
and fixed Stripe secrets for signature tests. Variables already present in
the environment win.
"""

import os

import django

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite://:memory:")
os.environ.setdefault("SECURE_SSL_REDIRECT", "False")
os.environ.setdefault("SESSION_COOKIE_SECURE", "False")
os.environ.setdefault("CSRF_COOKIE_SECURE", "False")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_billing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_billing")
os.environ.setdefault("STRIPE_PLATFORM_ACCOUNT_ID", "acct_platform")
os.environ.setdefault("CHAIN_REDEEMER_URL", "http://redeemer.test")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()
