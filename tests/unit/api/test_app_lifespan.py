from unittest.mock import AsyncMock, patch

import pytest

from app.main import app


@pytest.mark.asyncio
async def test_lifespan_opens_and_closes_the_database():
    with patch("app.db.session.initialize_database", AsyncMock()) as initialize, \
            patch("app.db.session.create_tables", AsyncMock()), \
            patch("app.db.session.close_database_connections", AsyncMock()) as close:
        async with app.router.lifespan_context(app):
            initialize.assert_awaited_once()
            close.assert_not_awaited()

    close.assert_awaited_once()


@pytest.mark.asyncio
async def test_startup_survives_an_unreachable_database():
    failing = AsyncMock(side_effect=ConnectionRefusedError("db down"))
    with patch("app.db.session.initialize_database", failing), \
            patch("app.db.session.close_database_connections", AsyncMock()) as close:
        async with app.router.lifespan_context(app):
            pass

    close.assert_awaited_once()
