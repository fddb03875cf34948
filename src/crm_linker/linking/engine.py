"""Contact/company and deal/contact linking via exact e-mail domain matching.

Provides EntityLinker, which fills null company and contact references on
existing CRM rows:

1. link_contacts_to_companies: a contact's e-mail domain is matched against
   company domains.
2. link_deals_to_contacts_and_companies: a deal's free-text contact e-mail is
   matched against contacts that already belong to a company, and the deal
   inherits that company.

Step 2 reads the contacts step 1 just linked, so the steps must run in that
order within one pass. Matching is exact on lowercased, trimmed keys. NO fuzzy
matching. When several candidates share a key, the earliest created one
wins (lowest id on a tie) and the key is reported as ambiguous.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Protocol, TypeVar

import structlog

from src.crm_linker.linking.errors import LinkOrderError
from src.crm_linker.linking.normalize import (
    email_domain,
    normalize_domain,
    normalize_email,
)
from src.crm_linker.linking.schemas import (
    CompanyRecord,
    ContactLink,
    ContactRecord,
    CoverageReport,
    DataQualityReport,
    DealLink,
    DealRecord,
    LinkStep,
    LinkStepResult,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R", CompanyRecord, ContactRecord)


# ── Protocols for dependency injection ────────────────────────────────────────


class LinkingStoreProtocol(Protocol):
    """Minimal interface for the store used by EntityLinker."""

    async def list_companies_with_domain(self) -> list[CompanyRecord]: ...

    async def list_unlinked_contacts(self) -> list[ContactRecord]: ...

    async def list_linked_contacts(self) -> list[ContactRecord]: ...

    async def list_unlinked_deals(self) -> list[DealRecord]: ...

    async def link_contacts(self, links: list[ContactLink], now: datetime) -> int: ...

    async def link_deals(self, links: list[DealLink], now: datetime) -> int: ...

    async def coverage_counts(self) -> CoverageReport: ...

    async def data_quality_counts(self) -> DataQualityReport: ...


# ── Tie-break ─────────────────────────────────────────────────────────────────


def _precedence(record: CompanyRecord | ContactRecord) -> tuple:
    # Earliest created first; records without a timestamp sort last.
    created = record.created_at
    return (created is None, created or datetime.min, str(record.id))


def build_index(
    records: Iterable[R], key: Callable[[R], str | None]
) -> tuple[dict[str, R], list[str]]:
    """Index records by normalized key, resolving duplicates deterministically.

    Args:
        records: Candidate records.
        key: Function returning a record's normalized key, or None to skip it.

    Returns:
        Tuple of (key -> winning record, sorted list of ambiguous keys).
    """
    grouped: dict[str, list[R]] = {}
    for record in records:
        k = key(record)
        if k is None:
            continue
        grouped.setdefault(k, []).append(record)

    index: dict[str, R] = {}
    ambiguous: list[str] = []
    for k, candidates in grouped.items():
        if len(candidates) > 1:
            ambiguous.append(k)
        index[k] = min(candidates, key=_precedence)
    return index, sorted(ambiguous)


# ── EntityLinker ──────────────────────────────────────────────────────────────


class EntityLinker:
    """Runs the linking steps of a single pass against a store.

    One instance per pass: it remembers whether the contacts step has run so
    the deals step can refuse to run first. The store is passed per call.
    """

    def __init__(self) -> None:
        self._contacts_linked = False

    # ── Step 1: contacts -> companies ─────────────────────────────────────

    async def link_contacts_to_companies(
        self,
        store: LinkingStoreProtocol,
        now: datetime | None = None,
    ) -> LinkStepResult:
        """Link unlinked contacts to the company owning their e-mail domain.

        Args:
            store: Linking store for the current pass.
            now: Timestamp written to updated_at (defaults to current UTC time).

        Returns:
            LinkStepResult with scanned, linked, unmatched and ambiguous counts.
        """
        now = now or datetime.now(timezone.utc)
        companies = await store.list_companies_with_domain()
        by_domain, ambiguous = build_index(
            companies, lambda c: normalize_domain(c.domain)
        )
        for domain in ambiguous:
            logger.warning(
                "entity_linker.ambiguous_domain",
                domain=domain,
                chosen_company_id=str(by_domain[domain].id),
            )

        contacts = await store.list_unlinked_contacts()
        links: list[ContactLink] = []
        for contact in contacts:
            domain = email_domain(contact.email)
            company = by_domain.get(domain) if domain else None
            if company is None:
                continue
            links.append(ContactLink(contact_id=contact.id, company_id=company.id))
            logger.debug(
                "entity_linker.contact_linked",
                contact_id=str(contact.id),
                company_id=str(company.id),
                domain=domain,
            )

        linked = await store.link_contacts(links, now)
        self._contacts_linked = True

        result = LinkStepResult(
            step=LinkStep.CONTACTS_TO_COMPANIES,
            scanned=len(contacts),
            linked=linked,
            unmatched=len(contacts) - len(links),
            ambiguous_keys=ambiguous,
        )
        logger.info(
            "entity_linker.contacts_step_done",
            scanned=result.scanned,
            linked=result.linked,
            unmatched=result.unmatched,
            ambiguous=len(ambiguous),
        )
        return result

    # ── Step 2: deals -> contacts/companies ───────────────────────────────

    async def link_deals_to_contacts_and_companies(
        self,
        store: LinkingStoreProtocol,
        now: datetime | None = None,
    ) -> LinkStepResult:
        """Link company-less deals through contacts that already have a company.

        A deal that already references a primary contact takes that contact's
        company. Otherwise its contact e-mail is matched against linked
        contacts, and the deal gets the contact's company and, when it has
        none, the contact as primary contact.

        Must be called after link_contacts_to_companies on this instance.

        Raises:
            LinkOrderError: If the contacts step has not run yet.
        """
        if not self._contacts_linked:
            raise LinkOrderError(
                "link_contacts_to_companies must run before "
                "link_deals_to_contacts_and_companies in the same pass"
            )
        now = now or datetime.now(timezone.utc)

        contacts = await store.list_linked_contacts()
        by_id = {c.id: c for c in contacts}
        by_email, ambiguous = build_index(
            contacts, lambda c: normalize_email(c.email)
        )
        for email in ambiguous:
            logger.warning(
                "entity_linker.ambiguous_email",
                email=email,
                chosen_contact_id=str(by_email[email].id),
            )

        deals = await store.list_unlinked_deals()
        links: list[DealLink] = []
        for deal in deals:
            link = self._plan_deal_link(deal, by_id, by_email)
            if link is None:
                continue
            links.append(link)
            logger.debug(
                "entity_linker.deal_linked",
                deal_id=str(deal.id),
                company_id=str(link.company_id),
                primary_contact_id=(
                    str(link.primary_contact_id) if link.primary_contact_id else None
                ),
            )

        linked = await store.link_deals(links, now)

        result = LinkStepResult(
            step=LinkStep.DEALS_TO_CONTACTS,
            scanned=len(deals),
            linked=linked,
            unmatched=len(deals) - len(links),
            ambiguous_keys=ambiguous,
        )
        logger.info(
            "entity_linker.deals_step_done",
            scanned=result.scanned,
            linked=result.linked,
            unmatched=result.unmatched,
            ambiguous=len(ambiguous),
        )
        return result

    @staticmethod
    def _plan_deal_link(
        deal: DealRecord,
        by_id: dict,
        by_email: dict[str, ContactRecord],
    ) -> DealLink | None:
        if deal.primary_contact_id is not None:
            referenced = by_id.get(deal.primary_contact_id)
            if referenced is not None:
                return DealLink(deal_id=deal.id, company_id=referenced.company_id)

        key = normalize_email(deal.contact_email)
        contact = by_email.get(key) if key else None
        if contact is None:
            return None
        return DealLink(
            deal_id=deal.id,
            company_id=contact.company_id,
            primary_contact_id=contact.id if deal.primary_contact_id is None else None,
        )

    # ── Reports ───────────────────────────────────────────────────────────

    async def report(self, store: LinkingStoreProtocol) -> CoverageReport:
        """Deal coverage after linking. Read-only."""
        coverage = await store.coverage_counts()
        logger.info(
            "entity_linker.coverage",
            total_deals=coverage.total_deals,
            company_pct=coverage.company_pct,
            contact_pct=coverage.contact_pct,
            fully_linked_pct=coverage.fully_linked_pct,
        )
        return coverage

    async def data_quality(self, store: LinkingStoreProtocol) -> DataQualityReport:
        """Counts of records the pass could not resolve. Read-only."""
        quality = await store.data_quality_counts()
        logger.info("entity_linker.data_quality", **quality.model_dump())
        return quality
