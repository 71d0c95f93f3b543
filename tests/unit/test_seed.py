"""
Unit tests for the taxonomy seed script.
"""

import pytest

from scripts.seed import seed_taxonomy
from sos_dispatch.services.providerDirectory import SqlProviderDirectory

pytestmark = pytest.mark.asyncio


class TestSeedTaxonomy:

    async def test_idempotent(self, db):
        first = await seed_taxonomy(db)
        await db.commit()
        second = await seed_taxonomy(db)

        assert first == (5, 7)
        assert second == (0, 0)

    async def test_parent_category_resolves_child_services(self, db):
        await seed_taxonomy(db)
        await db.commit()

        directory = SqlProviderDirectory(db)
        home = await directory.resolve_category("home-emergency")
        electrician = await directory.resolve_category("electrician")

        assert len(home) == 5
        assert electrician < home
