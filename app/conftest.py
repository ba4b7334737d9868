"""
Pytest configuration shared by every app under app/.

Test-only overrides (cache, Celery, password hashing) and the automatic
unit/integration/e2e marking live here. App-specific fixtures are defined
in each app's conftest.py.
"""

import django
import pytest


def pytest_configure():
    """Apply test-only settings once Django is set up."""
    django.setup()

    from django.conf import settings

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Tasks run inline; nothing talks to Redis
    from config.celery import app as celery_app

    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True

    if settings.DATABASES["default"]["ENGINE"].endswith("postgresql"):
        _patch_postgresql_flush_for_cascade()


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full lifecycle workflows)
    - test_views.py, test_tasks.py, service tests, etc. → integration
    - test_models.py, test_caveats.py, test_intervals.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    # Filename patterns for each category
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_subscription_ledger.py",
        "test_dunning_engine.py",
        "test_payment_sync.py",
        "test_delegation_store.py",
        "test_event_recorder.py",
        "test_redemption_sweeper.py",
        "test_dunning_worker.py",
        "test_sync_worker.py",
        "test_circuit_breaker.py",
        "test_chain_redeemer.py",
        "test_stripe_adapter.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_serializers.py",
        "test_managers.py",
        "test_caveats.py",
        "test_intervals.py",
        "test_state_transitions.py",
        "test_notifications.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filepath = str(item.fspath)
        filename = filepath.split("/")[-1]

        # Check patterns in priority order
        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)


@pytest.fixture(autouse=True)
def locmem_cache(settings):
    """
    Swap Redis for a per-test local memory cache.

    Circuit breaker state lives in the cache, so each test starts closed.
    """
    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "billing-tests",
        }
    }
    from django.core.cache import cache

    cache.clear()
    yield
    cache.clear()


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    This fixes the "cannot truncate a table referenced in a foreign key constraint"
    error that occurs when TransactionTestCase tries to flush the database.

    Django's TransactionTestCase uses TRUNCATE to reset the database, but without
    CASCADE this fails when tables have foreign key constraints.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(
        self, style, tables, *, reset_sequences=False, allow_cascade=False
    ):
        # Force CASCADE for PostgreSQL to handle FK constraints
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade
