"""Linking store -- bulk reads, guarded bulk updates, and aggregates.

Provides LinkingRepository, the SQLAlchemy implementation of the store the
EntityLinker works against. Unlike request-scoped repositories it is bound
to one AsyncSession for its whole life: LinkingService opens the session,
hands it to the repository, and owns the commit/rollback so a pass is a
single transaction.

Every update repeats the ``IS NULL`` predicate of the read that planned it,
so a reference that was filled in the meantime is never overwritten.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import structlog
from sqlalchemy import (
    DateTime,
    Row,
    Uuid,
    and_,
    bindparam,
    case,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_linker.crm.models import CompanyModel, ContactModel, DealModel
from src.crm_linker.linking.schemas import (
    CompanyRecord,
    ContactLink,
    ContactRecord,
    CoverageReport,
    DataQualityReport,
    DealLink,
    DealRecord,
)

logger = structlog.get_logger(__name__)

_contacts = ContactModel.__table__
_deals = DealModel.__table__

# Executemany statements, parameterized per row.
_LINK_CONTACT = (
    update(_contacts)
    .where(
        _contacts.c.id == bindparam("b_id", type_=Uuid()),
        _contacts.c.company_id.is_(None),
    )
    .values(
        company_id=bindparam("b_company_id", type_=Uuid()),
        updated_at=bindparam("b_now", type_=DateTime(timezone=True)),
    )
)

_LINK_DEAL_COMPANY = (
    update(_deals)
    .where(
        _deals.c.id == bindparam("b_id", type_=Uuid()),
        _deals.c.company_id.is_(None),
    )
    .values(
        company_id=bindparam("b_company_id", type_=Uuid()),
        updated_at=bindparam("b_now", type_=DateTime(timezone=True)),
    )
)

_LINK_DEAL_COMPANY_AND_CONTACT = (
    update(_deals)
    .where(
        _deals.c.id == bindparam("b_id", type_=Uuid()),
        _deals.c.company_id.is_(None),
        _deals.c.primary_contact_id.is_(None),
    )
    .values(
        company_id=bindparam("b_company_id", type_=Uuid()),
        primary_contact_id=bindparam("b_contact_id", type_=Uuid()),
        updated_at=bindparam("b_now", type_=DateTime(timezone=True)),
    )
)


def _not_blank(column):
    return and_(column.is_not(None), func.trim(column) != "")


# ── Serialization Helpers ───────────────────────────────────────────────────
# Reads select plain columns rather than entities so rows updated earlier in
# the pass are never served from a stale identity map.

_COMPANY_COLUMNS = (
    CompanyModel.id,
    CompanyModel.name,
    CompanyModel.domain,
    CompanyModel.created_at,
)
_CONTACT_COLUMNS = (
    ContactModel.id,
    ContactModel.email,
    ContactModel.company_id,
    ContactModel.created_at,
)
_DEAL_COLUMNS = (
    DealModel.id,
    DealModel.name,
    DealModel.company_id,
    DealModel.primary_contact_id,
    DealModel.contact_email,
)


def _row_to_company(row: Row) -> CompanyRecord:
    return CompanyRecord(
        id=row.id,
        name=row.name,
        domain=row.domain,
        created_at=row.created_at,
    )


def _row_to_contact(row: Row) -> ContactRecord:
    return ContactRecord(
        id=row.id,
        email=row.email,
        company_id=row.company_id,
        created_at=row.created_at,
    )


def _row_to_deal(row: Row) -> DealRecord:
    return DealRecord(
        id=row.id,
        name=row.name,
        company_id=row.company_id,
        primary_contact_id=row.primary_contact_id,
        contact_email=row.contact_email,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class LinkingRepository:
    """SQLAlchemy-backed store for one linking pass.

    Args:
        session: The pass's AsyncSession. The caller commits or rolls back.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ── Reads ───────────────────────────────────────────────────────────────

    async def list_companies_with_domain(self) -> list[CompanyRecord]:
        """All companies whose domain is present and non-blank."""
        stmt = (
            select(*_COMPANY_COLUMNS)
            .where(_not_blank(CompanyModel.domain))
            .order_by(CompanyModel.created_at, CompanyModel.id)
        )
        result = await self._session.execute(stmt)
        return [_row_to_company(row) for row in result]

    async def list_unlinked_contacts(self) -> list[ContactRecord]:
        """Contacts with an e-mail and no company reference."""
        stmt = (
            select(*_CONTACT_COLUMNS)
            .where(
                ContactModel.company_id.is_(None),
                _not_blank(ContactModel.email),
            )
            .order_by(ContactModel.created_at, ContactModel.id)
        )
        result = await self._session.execute(stmt)
        return [_row_to_contact(row) for row in result]

    async def list_linked_contacts(self) -> list[ContactRecord]:
        """Contacts that already carry a company reference."""
        stmt = (
            select(*_CONTACT_COLUMNS)
            .where(ContactModel.company_id.is_not(None))
            .order_by(ContactModel.created_at, ContactModel.id)
        )
        result = await self._session.execute(stmt)
        return [_row_to_contact(row) for row in result]

    async def list_unlinked_deals(self) -> list[DealRecord]:
        """Deals without a company that have something to resolve it from.

        That is either a non-blank contact e-mail or an existing
        primary contact reference.
        """
        stmt = (
            select(*_DEAL_COLUMNS)
            .where(
                DealModel.company_id.is_(None),
                or_(
                    _not_blank(DealModel.contact_email),
                    DealModel.primary_contact_id.is_not(None),
                ),
            )
            .order_by(DealModel.created_at, DealModel.id)
        )
        result = await self._session.execute(stmt)
        return [_row_to_deal(row) for row in result]

    # ── Writes ──────────────────────────────────────────────────────────────

    async def link_contacts(self, links: Sequence[ContactLink], now: datetime) -> int:
        """Set company_id on still-unlinked contacts.

        Returns:
            Number of links submitted.
        """
        if not links:
            return 0
        params = [
            {"b_id": link.contact_id, "b_company_id": link.company_id, "b_now": now}
            for link in links
        ]
        conn = await self._session.connection()
        await conn.execute(_LINK_CONTACT, params)
        logger.debug("linking_repository.contacts_updated", count=len(params))
        return len(params)

    async def link_deals(self, links: Sequence[DealLink], now: datetime) -> int:
        """Set company_id (and primary_contact_id where planned) on deals.

        Returns:
            Number of links submitted.
        """
        if not links:
            return 0
        with_contact = [
            {
                "b_id": link.deal_id,
                "b_company_id": link.company_id,
                "b_contact_id": link.primary_contact_id,
                "b_now": now,
            }
            for link in links
            if link.primary_contact_id is not None
        ]
        company_only = [
            {"b_id": link.deal_id, "b_company_id": link.company_id, "b_now": now}
            for link in links
            if link.primary_contact_id is None
        ]
        conn = await self._session.connection()
        if with_contact:
            await conn.execute(_LINK_DEAL_COMPANY_AND_CONTACT, with_contact)
        if company_only:
            await conn.execute(_LINK_DEAL_COMPANY, company_only)
        logger.debug(
            "linking_repository.deals_updated",
            with_contact=len(with_contact),
            company_only=len(company_only),
        )
        return len(with_contact) + len(company_only)

    # ── Aggregates ──────────────────────────────────────────────────────────

    async def coverage_counts(self) -> CoverageReport:
        """Count deals by which references they carry."""
        fully_linked = case(
            (
                and_(
                    DealModel.company_id.is_not(None),
                    DealModel.primary_contact_id.is_not(None),
                ),
                1,
            )
        )
        stmt = select(
            func.count(DealModel.id),
            func.count(DealModel.company_id),
            func.count(DealModel.primary_contact_id),
            func.count(fully_linked),
        )
        total, with_company, with_contact, both = (await self._session.execute(stmt)).one()
        return CoverageReport.from_counts(
            total_deals=total,
            deals_with_company=with_company,
            deals_with_contact=with_contact,
            fully_linked=both,
        )

    async def data_quality_counts(self) -> DataQualityReport:
        """Count records left unresolvable, grouped by likely cause."""
        companies_without_domain = await self._count(
            select(func.count(CompanyModel.id)).where(
                or_(
                    CompanyModel.domain.is_(None),
                    func.trim(CompanyModel.domain) == "",
                )
            )
        )
        contacts_without_company = await self._count(
            select(func.count(ContactModel.id)).where(
                ContactModel.company_id.is_(None),
                _not_blank(ContactModel.email),
            )
        )
        deals_without_contact = await self._count(
            select(func.count(DealModel.id)).where(
                DealModel.primary_contact_id.is_(None),
                _not_blank(DealModel.contact_email),
            )
        )
        return DataQualityReport(
            companies_without_domain=companies_without_domain,
            contacts_without_company=contacts_without_company,
            deals_without_contact=deals_without_contact,
        )

    # ── Pass Lock ───────────────────────────────────────────────────────────

    async def try_pass_lock(self, lock_key: int) -> bool:
        """Take the transaction-scoped pass lock.

        On PostgreSQL this is ``pg_try_advisory_xact_lock``, released when
        the pass commits or rolls back. Other dialects have no equivalent
        and always succeed.
        """
        conn = await self._session.connection()
        if conn.dialect.name != "postgresql":
            return True
        result = await conn.execute(select(func.pg_try_advisory_xact_lock(lock_key)))
        return bool(result.scalar_one())

    async def _count(self, stmt) -> int:
        result = await self._session.execute(stmt)
        return int(result.scalar_one())
