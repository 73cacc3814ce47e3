# ===============================================================================
# PYTEST CONFIGURATION FOR THE BILLING ENGINE
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- tests/factories/ holds plain factory functions shared across apps

Run specific app tests: pytest tests/billing/
"""

import os

import django
import pytest
from django.core.cache import cache


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.test")
    django.setup()


@pytest.fixture(autouse=True)
def clear_cache():
    """The billing tick lock lives in the cache; never leak it between tests"""
    cache.clear()
    yield
    cache.clear()
