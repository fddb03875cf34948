"""End-to-end tests for LinkingService on an in-memory SQLite database.

Covers a full committed pass, idempotent re-runs, dry runs, the pass lock,
and the all-or-nothing rollback when the store fails mid-pass.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_linker.crm.models import CompanyModel, ContactModel, DealModel
from src.crm_linker.linking.errors import (
    LinkingPassAbortedError,
    LinkingPassBusyError,
    StoreUnavailableError,
)
from src.crm_linker.linking.repository import LinkingRepository
from src.crm_linker.linking.service import LinkingService

CREATED = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def acme_world(seed):
    """Spec example plus some noise: one company, three contacts, four deals."""
    ids = {
        "acme": uuid.uuid4(),
        "no_domain": uuid.uuid4(),
        "contact_a": uuid.uuid4(),
        "contact_b": uuid.uuid4(),
        "contact_lost": uuid.uuid4(),
        "deal_a": uuid.uuid4(),
        "deal_b": uuid.uuid4(),
        "deal_lost": uuid.uuid4(),
        "deal_blank": uuid.uuid4(),
    }

    async def _seed() -> dict[str, uuid.UUID]:
        await seed(
            CompanyModel(id=ids["acme"], name="Acme", domain="acme.com", created_at=CREATED),
            CompanyModel(id=ids["no_domain"], name="Mystery", domain=None, created_at=CREATED),
            ContactModel(id=ids["contact_a"], email="a@acme.com", created_at=CREATED),
            ContactModel(id=ids["contact_b"], email=" B@Acme.Com ", created_at=CREATED),
            ContactModel(id=ids["contact_lost"], email="c@elsewhere.io", created_at=CREATED),
            DealModel(id=ids["deal_a"], name="A", contact_email="A@ACME.com", created_at=CREATED),
            DealModel(id=ids["deal_b"], name="B", contact_email="b@acme.com", created_at=CREATED),
            DealModel(id=ids["deal_lost"], name="C", contact_email="c@elsewhere.io", created_at=CREATED),
            DealModel(id=ids["deal_blank"], name="D", contact_email=None, created_at=CREATED),
        )
        return ids

    return _seed


class _FailingDealsRepository(LinkingRepository):
    """Repository whose deal update is rejected by the store."""

    error: Exception = IntegrityError("UPDATE deals", {}, Exception("fk violation"))

    async def link_deals(self, links, now):  # type: ignore[override]
        raise self.error


class _UnavailableRepository(LinkingRepository):
    async def list_companies_with_domain(self):  # type: ignore[override]
        raise OperationalError("SELECT companies", {}, Exception("connection reset"))


class _LockedRepository(LinkingRepository):
    async def try_pass_lock(self, lock_key: int) -> bool:
        return False


class TestRunPass:
    @pytest.mark.asyncio
    async def test_full_pass_links_and_reports(self, session_factory, acme_world, fetch) -> None:
        ids = await acme_world()

        result = await LinkingService(session_factory).run_pass()

        assert result.committed is True
        assert result.contacts.linked == 2
        assert result.contacts.unmatched == 1
        assert result.deals.linked == 2
        assert result.deals.unmatched == 1

        contact_a = await fetch(ContactModel, ids["contact_a"])
        assert contact_a.company_id == ids["acme"]
        assert (await fetch(ContactModel, ids["contact_b"])).company_id == ids["acme"]
        assert (await fetch(ContactModel, ids["contact_lost"])).company_id is None

        deal_a = await fetch(DealModel, ids["deal_a"])
        assert deal_a.company_id == ids["acme"]
        assert deal_a.primary_contact_id == ids["contact_a"]
        deal_b = await fetch(DealModel, ids["deal_b"])
        assert deal_b.primary_contact_id == ids["contact_b"]
        assert (await fetch(DealModel, ids["deal_lost"])).company_id is None

        assert result.coverage.total_deals == 4
        assert result.coverage.fully_linked == 2
        assert result.coverage.fully_linked_pct == 50.0
        assert result.data_quality.companies_without_domain == 1
        assert result.data_quality.contacts_without_company == 1
        assert result.data_quality.deals_without_contact == 1

    @pytest.mark.asyncio
    async def test_second_pass_is_a_noop(self, engine, session_factory, acme_world) -> None:
        await acme_world()
        service = LinkingService(session_factory)
        await service.run_pass()

        async with AsyncSession(engine) as session:
            before = (await session.execute(select(DealModel.id, DealModel.updated_at))).all()

        second = await service.run_pass()

        async with AsyncSession(engine) as session:
            after = (await session.execute(select(DealModel.id, DealModel.updated_at))).all()

        assert second.total_linked == 0
        assert second.coverage.fully_linked_pct == 50.0
        assert sorted(before) == sorted(after)

    @pytest.mark.asyncio
    async def test_dry_run_reports_but_does_not_commit(self, session_factory, acme_world, fetch) -> None:
        ids = await acme_world()

        result = await LinkingService(session_factory).run_pass(dry_run=True)

        assert result.dry_run is True
        assert result.committed is False
        assert result.deals.linked == 2
        assert result.coverage.fully_linked_pct == 50.0
        assert (await fetch(ContactModel, ids["contact_a"])).company_id is None
        assert (await fetch(DealModel, ids["deal_a"])).company_id is None

    @pytest.mark.asyncio
    async def test_store_rejection_rolls_back_whole_pass(self, session_factory, acme_world, fetch) -> None:
        ids = await acme_world()
        service = LinkingService(session_factory, repository_factory=_FailingDealsRepository)

        with pytest.raises(LinkingPassAbortedError) as exc_info:
            await service.run_pass()

        assert not isinstance(exc_info.value, StoreUnavailableError)
        assert isinstance(exc_info.value.original_error, IntegrityError)
        # Contacts were linked before the failure; the rollback undoes them too.
        assert (await fetch(ContactModel, ids["contact_a"])).company_id is None
        assert (await fetch(ContactModel, ids["contact_b"])).company_id is None

    @pytest.mark.asyncio
    async def test_connection_failure_is_store_unavailable(self, session_factory, acme_world) -> None:
        await acme_world()
        service = LinkingService(session_factory, repository_factory=_UnavailableRepository)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await service.run_pass()

        assert exc_info.value.pass_id
        assert "rolled back" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_busy_lock_aborts_without_changes(self, session_factory, acme_world, fetch) -> None:
        ids = await acme_world()
        service = LinkingService(
            session_factory, lock_key=99, repository_factory=_LockedRepository
        )

        with pytest.raises(LinkingPassBusyError) as exc_info:
            await service.run_pass()

        assert exc_info.value.lock_key == 99
        assert (await fetch(ContactModel, ids["contact_a"])).company_id is None

    @pytest.mark.asyncio
    async def test_empty_database(self, session_factory) -> None:
        result = await LinkingService(session_factory).run_pass()

        assert result.total_linked == 0
        assert result.coverage.total_deals == 0
        assert result.coverage.fully_linked_pct == 0.0
