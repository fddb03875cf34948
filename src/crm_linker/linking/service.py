"""Linking pass orchestration -- one transaction around the whole pass.

Provides LinkingService, which opens a session, takes the pass lock, runs
the EntityLinker steps in their required order, collects the reports, and
then commits (or rolls back for a dry run). Any store failure rolls the
whole pass back: linkage is never partially committed.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_linker.linking.engine import EntityLinker
from src.crm_linker.linking.errors import (
    LinkerError,
    LinkingPassAbortedError,
    LinkingPassBusyError,
    StoreUnavailableError,
)
from src.crm_linker.linking.repository import LinkingRepository
from src.crm_linker.linking.schemas import LinkingPassResult

logger = structlog.get_logger(__name__)


class LinkingService:
    """Runs complete linking passes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        lock_key: Advisory lock key shared by every linker instance.
        repository_factory: Builds the store around the pass's session.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        lock_key: int = 54321,
        repository_factory: Callable[[AsyncSession], LinkingRepository] = LinkingRepository,
    ) -> None:
        self._session_factory = session_factory
        self._lock_key = lock_key
        self._repository_factory = repository_factory

    async def run_pass(self, dry_run: bool = False) -> LinkingPassResult:
        """Run one linking pass.

        Args:
            dry_run: Compute links and reports, then roll back instead of
                committing. Reports reflect the uncommitted state.

        Returns:
            LinkingPassResult with step results and reports.

        Raises:
            LinkingPassBusyError: Another pass holds the lock.
            StoreUnavailableError: The store connection failed.
            LinkingPassAbortedError: The store rejected part of the pass.
        """
        pass_id = uuid.uuid4().hex[:12]
        log = logger.bind(pass_id=pass_id, dry_run=dry_run)
        started_at = datetime.now(timezone.utc)
        log.info("linking_pass.started")

        try:
            async for session in self._session_factory():
                try:
                    result = await self._run_in_transaction(
                        session, pass_id, dry_run, started_at
                    )
                except Exception:
                    await self._rollback(session, log)
                    raise
                return result
        except LinkerError:
            raise
        except (OSError, OperationalError, InterfaceError) as exc:
            log.error("linking_pass.store_unavailable", exc_info=True)
            raise StoreUnavailableError(pass_id, exc) from exc
        except DBAPIError as exc:
            log.error("linking_pass.aborted", exc_info=True)
            if exc.connection_invalidated:
                raise StoreUnavailableError(pass_id, exc) from exc
            raise LinkingPassAbortedError(pass_id, exc) from exc
        except SQLAlchemyError as exc:
            log.error("linking_pass.aborted", exc_info=True)
            raise LinkingPassAbortedError(pass_id, exc) from exc
        raise RuntimeError("session factory yielded no session")

    async def _run_in_transaction(
        self,
        session: AsyncSession,
        pass_id: str,
        dry_run: bool,
        started_at: datetime,
    ) -> LinkingPassResult:
        log = logger.bind(pass_id=pass_id, dry_run=dry_run)
        store = self._repository_factory(session)

        if not await store.try_pass_lock(self._lock_key):
            log.warning("linking_pass.busy", lock_key=self._lock_key)
            raise LinkingPassBusyError(self._lock_key)

        linker = EntityLinker()
        contacts = await linker.link_contacts_to_companies(store, now=started_at)
        deals = await linker.link_deals_to_contacts_and_companies(store, now=started_at)
        coverage = await linker.report(store)
        quality = await linker.data_quality(store)

        if dry_run:
            await session.rollback()
            log.info("linking_pass.rolled_back_dry_run")
        else:
            await session.commit()

        result = LinkingPassResult(
            pass_id=pass_id,
            dry_run=dry_run,
            committed=not dry_run,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            contacts=contacts,
            deals=deals,
            coverage=coverage,
            data_quality=quality,
        )
        log.info(
            "linking_pass.finished",
            committed=result.committed,
            contacts_linked=contacts.linked,
            deals_linked=deals.linked,
            fully_linked_pct=coverage.fully_linked_pct,
        )
        return result

    @staticmethod
    async def _rollback(session: AsyncSession, log: structlog.stdlib.BoundLogger) -> None:
        try:
            await session.rollback()
        except (OSError, SQLAlchemyError):
            # The connection is likely gone; the store discards the transaction.
            log.warning("linking_pass.rollback_failed", exc_info=True)
