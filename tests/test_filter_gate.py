"""Tests for the pre-call filter gate."""

import logging
from unittest.mock import AsyncMock, patch

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings
from app.models.enums import DNCSource, RequestMethod
from app.schemas.dnc import DNCStatus
from app.services import filter_gate, registry_store
from app.services.errors import StoreUnavailable


class TestGuard:
    async def test_allows_clear_number(self, db: AsyncSession):
        decision = await filter_gate.guard(db, "tenant-a", "(202) 555-1234")
        assert decision.allowed is True
        assert decision.fail_open is False

    async def test_blocks_listed_number(self, db: AsyncSession, make_entry):
        await registry_store.upsert_suppression_batch(db, [make_entry()])
        decision = await filter_gate.guard(db, "tenant-a", "+12025551234")
        assert decision.allowed is False
        assert decision.source == DNCSource.NATIONAL

    async def test_blocks_opt_out(self, db: AsyncSession):
        await registry_store.add_opt_out(
            db, "tenant-a", "+12025551234", "Asked to stop", RequestMethod.PHONE_CALL,
        )
        decision = await filter_gate.guard(db, "tenant-a", "202-555-1234")
        assert decision.allowed is False
        assert decision.source == DNCSource.INTERNAL

    async def test_invalid_number_fails_open(self, db: AsyncSession, caplog):
        before = filter_gate.fail_open_count()
        with caplog.at_level(logging.WARNING, logger="app.services.filter_gate"):
            decision = await filter_gate.guard(db, "tenant-a", "555-BAD")

        assert decision.allowed is True
        assert decision.fail_open is True
        assert filter_gate.fail_open_count() == before + 1
        record = next(r for r in caplog.records if getattr(r, "event", None) == "dnc_fail_open")
        assert record.error_code == "INVALID_FORMAT"

    async def test_store_unavailable_fails_open(self, db: AsyncSession, caplog):
        lookup = AsyncMock(side_effect=StoreUnavailable("Registry store unavailable"))
        config = Settings(DNC_GUARD_ATTEMPTS=3)

        with patch("app.services.registry_store.find_suppressions_for_numbers", lookup):
            with caplog.at_level(logging.WARNING, logger="app.services.filter_gate"):
                decision = await filter_gate.guard(db, None, "+12025551234", config=config)

        assert decision.allowed is True
        assert decision.fail_open is True
        assert lookup.await_count == 3
        record = next(r for r in caplog.records if getattr(r, "event", None) == "dnc_fail_open")
        assert record.error_code == "STORE_UNAVAILABLE"

    async def test_unreachable_database_fails_open(self, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dnc.db'}", echo=False,
        )
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with factory() as session:
                decision = await filter_gate.guard(
                    session, None, "+12025551234", config=Settings(DNC_GUARD_ATTEMPTS=1),
                )
        finally:
            await engine.dispose()

        assert decision.allowed is True
        assert decision.fail_open is True

    async def test_recovers_on_retry(self, db: AsyncSession):
        blocked = DNCStatus(
            phone_number="+12025551234",
            normalized="+12025551234",
            is_on_dnc=True,
            can_call=False,
            source=DNCSource.NATIONAL,
            reason="Listed on the National Do Not Call Registry",
        )
        check = AsyncMock(side_effect=[StoreUnavailable("blip"), blocked])

        with patch("app.services.lookup_service.check", check):
            decision = await filter_gate.guard(
                db, None, "+12025551234", config=Settings(DNC_GUARD_ATTEMPTS=2),
            )

        assert decision.allowed is False
        assert decision.fail_open is False
        assert check.await_count == 2

    async def test_unexpected_error_fails_open(self, db: AsyncSession):
        with patch("app.services.lookup_service.check", AsyncMock(side_effect=RuntimeError("bug"))):
            decision = await filter_gate.guard(db, None, "+12025551234")
        assert decision.allowed is True
        assert decision.reason == "DNC check skipped: RuntimeError"

    async def test_missing_number_fails_open(self, db: AsyncSession, caplog):
        with caplog.at_level(logging.WARNING, logger="app.services.filter_gate"):
            decision = await filter_gate.guard(db, "tenant-a", None)

        assert decision.allowed is True
        assert decision.fail_open is True
        assert decision.phone_number == ""
        record = next(r for r in caplog.records if getattr(r, "event", None) == "dnc_fail_open")
        assert record.error_code == "INVALID_FORMAT"

    async def test_numeric_input_is_checked(self, db: AsyncSession, make_entry):
        await registry_store.upsert_suppression_batch(db, [make_entry()])
        decision = await filter_gate.guard(db, None, 2025551234)
        assert decision.allowed is False
        assert decision.phone_number == "2025551234"
