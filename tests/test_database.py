"""
Tests for connection setup.
"""

from unittest.mock import patch

import pytest

from app.config import settings
from app.database import get_database_url
from app.redis import RedisClient, get_redis


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("postgres://u:p@db:5432/shop", "postgresql+asyncpg://u:p@db:5432/shop"),
            ("postgresql://u:p@db/shop?sslmode=require", "postgresql+asyncpg://u:p@db/shop"),
            (
                "postgresql://u:p@db/shop?sslmode=disable&application_name=pay",
                "postgresql+asyncpg://u:p@db/shop?application_name=pay",
            ),
            ("postgresql+asyncpg://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
            ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
        ],
    )
    def test_normalized_for_async_driver(self, raw, expected):
        with patch.object(settings, "database_url", raw):
            assert get_database_url() == expected

    def test_unset(self):
        with patch.object(settings, "database_url", ""):
            assert get_database_url() == ""


class TestRedis:
    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        with patch.object(settings, "redis_url", ""):
            assert await get_redis() is None

    @pytest.mark.asyncio
    async def test_client_is_shared(self):
        with patch.object(settings, "redis_url", "redis://localhost:6379/15"):
            first = await get_redis()
            second = await get_redis()
        try:
            assert first is not None
            assert first is second
        finally:
            await RedisClient.close()
