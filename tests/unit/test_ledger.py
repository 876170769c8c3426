import pytest

from provisio.errors import LedgerConflict
from provisio.ledger import ResourceLedger
from provisio.persistence import LedgerStatus, ResourceType


@pytest.mark.asyncio
async def test_entry_lifecycle(repo):
    ledger = ResourceLedger(repo)
    entry = await ledger.reserve(
        ResourceType.DATABASE, "shop", "run-1", details={"operation": "create_database"}
    )
    assert entry.status == LedgerStatus.PENDING

    await ledger.activate(ResourceType.DATABASE, "shop", "run-1")
    active = await ledger.lookup(ResourceType.DATABASE, "shop")
    assert active.status == LedgerStatus.ACTIVE
    assert active.details == {"operation": "create_database"}

    with pytest.raises(LedgerConflict) as exc:
        await ledger.reserve(ResourceType.DATABASE, "shop", "run-2")
    assert exc.value.kind == "LedgerConflict"


@pytest.mark.asyncio
async def test_failed_entries_keep_the_key(repo):
    ledger = ResourceLedger(repo)
    await ledger.reserve(ResourceType.EMAIL_ACCOUNT, "info@example.com", "run-1")
    await ledger.mark_failed(ResourceType.EMAIL_ACCOUNT, "info@example.com", "run-1")

    with pytest.raises(LedgerConflict):
        await ledger.reserve(ResourceType.EMAIL_ACCOUNT, "info@example.com", "run-2")


@pytest.mark.asyncio
async def test_list_entries_by_type(repo):
    ledger = ResourceLedger(repo)
    await ledger.reserve(ResourceType.DOMAIN, "example.com", "run-1")
    await ledger.reserve(ResourceType.DATABASE, "shop", "run-2")
    await ledger.roll_back(ResourceType.DATABASE, "shop", "run-2")

    assert [e.natural_key for e in await ledger.list_entries(ResourceType.DOMAIN)] == [
        "example.com"
    ]
    assert len(await ledger.list_entries()) == 2
    assert await ledger.lookup(ResourceType.DATABASE, "shop") is None
