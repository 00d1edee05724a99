"""
Pytest configuration and shared fixtures.
"""

import os

# Set up test environment variables BEFORE any imports
# This ensures the config module loads properly during test collection
os.environ.update({
    "ENVIRONMENT": "test",
    "DOCUMENT_STORE": "memory",
    "WRITE_PAUSE_SECONDS": "0",
    "PROGRESS_INTERVAL_SECONDS": "0",
    "CLEAR_ANONYMOUS_ON_START": "false",
})

import pytest
import pytest_asyncio
from datetime import datetime

from receiptflow.config import ReceiptflowConfig
from receiptflow.document_store import InMemoryDocumentStore
from receiptflow.identity import LocalIdentityProvider, PasswordHasher
from receiptflow.local_cache import LocalCache
from receiptflow.models import Receipt, Bounty


# Fixed reference time for everything date-dependent
NOW = datetime(2024, 10, 20, 12, 0)


def make_receipt(timestamp="Oct 18 1:15 PM", user="alice", action="like", concept="cats", amount=10, raw=""):
    return Receipt(user=user, action=action, concept=concept, amount=amount, timestamp=timestamp, raw=raw)


def make_bounty(timestamp="Oct 18 9:00 AM", amount=100):
    return Bounty(amount=amount, timestamp=timestamp)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def config():
    """Configuration read from the test environment (no pauses, no throttling)."""
    return ReceiptflowConfig()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def small_batch_store():
    """Store with a tiny per-commit ceiling to exercise batch splitting."""
    return InMemoryDocumentStore(max_batch_operations=5)


@pytest.fixture
def local_cache(tmp_path):
    return LocalCache(str(tmp_path / "cache"))


@pytest.fixture
def fast_hasher():
    """Scrypt with a low cost factor so tests stay fast."""
    return PasswordHasher(n=2 ** 4)


@pytest.fixture
def identity_provider(store, fast_hasher):
    return LocalIdentityProvider(store, hasher=fast_hasher)


@pytest_asyncio.fixture
async def user_id(identity_provider):
    """A signed-up user; the provider is left signed out."""
    identity = await identity_provider.sign_up("alice@example.com", "secret123", "alice")
    await identity_provider.log_out()
    return identity.user_id
