"""Pydantic schemas for the linking pass -- store records, planned links, reports.

Defines:
- Store records: CompanyRecord, ContactRecord, DealRecord (read-side views)
- Planned mutations: ContactLink, DealLink
- Results: LinkStepResult, CoverageReport, DataQualityReport, LinkingPassResult
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field


def coverage_pct(count: int, total: int) -> float:
    """Percentage of ``total`` covered by ``count``, rounded half-up to 0.1.

    Returns 0.0 when ``total`` is zero.
    """
    if total <= 0:
        return 0.0
    pct = Decimal(100 * count) / Decimal(total)
    return float(pct.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


# ── Store Records ───────────────────────────────────────────────────────────


class CompanyRecord(BaseModel):
    """Company candidate for domain matching."""

    id: uuid.UUID
    name: str
    domain: str | None = None
    created_at: datetime | None = None


class ContactRecord(BaseModel):
    """Contact as seen by the linker."""

    id: uuid.UUID
    email: str | None = None
    company_id: uuid.UUID | None = None
    created_at: datetime | None = None


class DealRecord(BaseModel):
    """Deal candidate for contact/company linking."""

    id: uuid.UUID
    name: str = ""
    company_id: uuid.UUID | None = None
    primary_contact_id: uuid.UUID | None = None
    contact_email: str | None = None


# ── Planned Mutations ───────────────────────────────────────────────────────


class ContactLink(BaseModel):
    """Fill a contact's null company reference."""

    contact_id: uuid.UUID
    company_id: uuid.UUID


class DealLink(BaseModel):
    """Fill a deal's null company reference, and its contact when also null."""

    deal_id: uuid.UUID
    company_id: uuid.UUID
    primary_contact_id: uuid.UUID | None = None


# ── Results ─────────────────────────────────────────────────────────────────


class LinkStep(str, Enum):
    """The two mutating steps of a pass, in execution order."""

    CONTACTS_TO_COMPANIES = "contacts_to_companies"
    DEALS_TO_CONTACTS = "deals_to_contacts"


class LinkStepResult(BaseModel):
    """Outcome of one linking step."""

    step: LinkStep
    scanned: int = 0
    linked: int = 0
    unmatched: int = 0
    ambiguous_keys: list[str] = Field(default_factory=list)


class CoverageReport(BaseModel):
    """Deal coverage counts and percentages (one decimal place)."""

    total_deals: int = 0
    deals_with_company: int = 0
    deals_with_contact: int = 0
    fully_linked: int = 0
    company_pct: float = 0.0
    contact_pct: float = 0.0
    fully_linked_pct: float = 0.0

    @classmethod
    def from_counts(
        cls,
        total_deals: int,
        deals_with_company: int,
        deals_with_contact: int,
        fully_linked: int,
    ) -> CoverageReport:
        """Build a report from raw counts, deriving the percentages."""
        return cls(
            total_deals=total_deals,
            deals_with_company=deals_with_company,
            deals_with_contact=deals_with_contact,
            fully_linked=fully_linked,
            company_pct=coverage_pct(deals_with_company, total_deals),
            contact_pct=coverage_pct(deals_with_contact, total_deals),
            fully_linked_pct=coverage_pct(fully_linked, total_deals),
        )


class DataQualityReport(BaseModel):
    """Records the pass could not resolve, grouped by the likely cause."""

    companies_without_domain: int = 0
    contacts_without_company: int = 0
    deals_without_contact: int = 0


class LinkingPassResult(BaseModel):
    """Everything a caller or operator needs to know about one pass."""

    pass_id: str
    dry_run: bool = False
    committed: bool = False
    started_at: datetime
    finished_at: datetime
    contacts: LinkStepResult
    deals: LinkStepResult
    coverage: CoverageReport
    data_quality: DataQualityReport

    @property
    def total_linked(self) -> int:
        return self.contacts.linked + self.deals.linked
