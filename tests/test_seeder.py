import pytest

from storefront.seeder import seed_inventory


@pytest.mark.asyncio
async def test_seed_inventory_is_idempotent(session_factory, inventory):
    assert await seed_inventory(session_factory) is True
    assert await seed_inventory(session_factory) is False

    assert await inventory.get_stock("product-A") == 10
    assert await inventory.get_stock("product-B") == 5
    assert await inventory.get_stock("product-C") == 0
