from decimal import Decimal

import pytest

from wallet_ledger.cache import ReadCache
from wallet_ledger.config import LedgerSettings
from wallet_ledger.errors import InfrastructureFailure
from wallet_ledger.service import LedgerService
from wallet_ledger.store import InMemoryDocumentStore


ADMIN_ID = "admin-1"
CREATOR_ID = "creator-1"
WORKER_ID = "worker-1"
BLOCKED_ADMIN_ID = "admin-blocked"


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose CAS raises for selected path prefixes."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.failing_prefixes: set[str] = set()

    async def compare_and_swap(self, path, fn):
        if any(path.startswith(prefix) for prefix in self.failing_prefixes):
            raise InfrastructureFailure(f"simulated outage on {path}")
        return await super().compare_and_swap(path, fn)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store() -> FlakyStore:
    store = FlakyStore()
    store.seed(f"users/{ADMIN_ID}", {"role": "admin", "isBlocked": False, "fullName": "Ada Admin"})
    store.seed(f"users/{BLOCKED_ADMIN_ID}", {"role": "admin", "isBlocked": True, "fullName": "Blocked Admin"})
    store.seed(f"users/{CREATOR_ID}", {"role": "user", "isBlocked": False, "fullName": "Cara Creator"})
    store.seed(f"users/{WORKER_ID}", {
        "role": "user", "isBlocked": False, "fullName": "Will Worker",
        "earnedMoney": Decimal("0"), "approvedWorks": 0, "totalWithdrawn": Decimal("0"),
    })
    return store


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings()


@pytest.fixture
def service(store, settings) -> LedgerService:
    cache = ReadCache(ttl_seconds=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries)
    return LedgerService(store=store, cache=cache, settings=settings)
