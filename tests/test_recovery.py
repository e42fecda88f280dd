from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from storefront.exceptions import CompensationFailure, StorageFailure
from storefront.models import SagaState
from storefront.recovery import run_recovery


@pytest.mark.asyncio
async def test_run_recovery_reverses_stuck_reservation(session_factory, coordinator, inventory,
                                                       seed_products, place_order):
    await seed_products({"A": 5, "B": 0})
    order = await place_order([("A", 2), ("B", 1)])
    with patch.object(inventory, "increment", new=AsyncMock(side_effect=StorageFailure("down"))):
        with pytest.raises(CompensationFailure) as excinfo:
            await coordinator.reserve(order)

    summary = await run_recovery(session_factory, grace=timedelta(0))

    assert summary == {"completed": 0, "compensated": 0, "aborted": 1, "failed": 0}
    assert (await coordinator.get_saga(excinfo.value.saga_id)).state == SagaState.ABORTED
    assert await inventory.get_stock("A") == 5


@pytest.mark.asyncio
async def test_run_recovery_skips_recent_sagas_by_default(session_factory, coordinator, inventory,
                                                          seed_products, place_order):
    await seed_products({"A": 5})
    order = await place_order([("A", 2)])
    saga_id = await coordinator.reserve(order)

    summary = await run_recovery(session_factory)

    assert sum(summary.values()) == 0
    assert (await coordinator.get_saga(saga_id)).state == SagaState.RESERVED
