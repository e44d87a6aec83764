"""Background scheduler for retention SMS and lifecycle email drips.

Runs as an ``asyncio`` background task.  Each interval it evaluates every
eligible trial tenant for the SMS sequence, then every drip candidate for
email, sending at most one message of each kind per tenant per run.
A failure for one tenant is logged and counted but never stops the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from entitlement_engine.config import EngineSettings
from entitlement_engine.retention.drips import DripRecipient
from entitlement_engine.state.database import session_scope
from entitlement_engine.state.repository import TenantRepository
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_api.config import APISettings
from entitlement_api.services.drip_service import DripEmailService, recipient_for
from entitlement_api.services.email_client import ResendEmailClient
from entitlement_api.services.messaging import TwilioSmsClient
from entitlement_api.services.retention_service import RetentionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Candidate:
    tenant_id: str
    phone: str
    business_name: str | None
    trial_ends_at: datetime | None


@dataclass(frozen=True)
class _DripCandidate:
    tenant_id: str
    email: str
    business_name: str | None
    recipient: DripRecipient


class RetentionScheduler:
    """AsyncIO background task for the retention sequence.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker``.  Candidate selection uses one session and
        each tenant is processed and committed in its own.
    settings:
        API settings (enable flag, interval, activation link).
    engine_settings:
        Engine settings (trial length, step day offsets).
    messenger:
        SMS collaborator.
    mailer:
        Email collaborator.  Without one the drip pass reports ``disabled``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: APISettings,
        engine_settings: EngineSettings,
        messenger: TwilioSmsClient,
        *,
        mailer: ResendEmailClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._engine_settings = engine_settings
        self._messenger = messenger
        self._mailer = mailer
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("RetentionScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "RetentionScheduler started (interval=%ds)",
            self._settings.retention_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RetentionScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await self.run_email_drips()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("RetentionScheduler database error: %s", exc, exc_info=True)
            await asyncio.sleep(self._settings.retention_interval_seconds)

    async def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        """Evaluate every eligible tenant once.

        Parameters
        ----------
        now:
            Evaluation time; defaults to the current UTC time.

        Returns
        -------
        dict
            ``processed``, ``sent``, ``failed`` and ``skipped`` counts.
            ``disabled`` is ``True`` (and every count zero) when the
            sequence is turned off.
        """
        summary: dict[str, Any] = {"disabled": False, "processed": 0, "sent": 0, "failed": 0, "skipped": 0}
        if not self._settings.retention_enabled:
            logger.info("Retention sequence disabled; skipping run")
            summary["disabled"] = True
            return summary

        now = now or datetime.now(UTC)

        for candidate in await self._load_candidates(now):
            summary["processed"] += 1
            try:
                outcome = await self._process(candidate, now)
            except Exception as exc:
                logger.error(
                    "Retention processing failed for tenant %s: %s",
                    candidate.tenant_id,
                    exc,
                    exc_info=True,
                )
                summary["failed"] += 1
                continue
            summary[outcome] += 1

        logger.info(
            "Retention run complete: processed=%d sent=%d failed=%d skipped=%d",
            summary["processed"],
            summary["sent"],
            summary["failed"],
            summary["skipped"],
        )
        return summary

    async def _load_candidates(self, now: datetime) -> list[_Candidate]:
        async with self._session_factory() as session:
            rows = await TenantRepository(session).list_retention_candidates(now)
            return [
                _Candidate(
                    tenant_id=tenant.tenant_id,
                    phone=tenant.phone or "",
                    business_name=tenant.business_name,
                    trial_ends_at=entitlement.trial_ends_at,
                )
                for tenant, entitlement in rows
            ]

    async def _process(self, candidate: _Candidate, now: datetime) -> str:
        async with session_scope(self._session_factory) as session:
            service = RetentionService(session, self._settings, self._engine_settings, self._messenger)
            return await service.process_tenant(
                candidate.tenant_id,
                phone=candidate.phone,
                business_name=candidate.business_name,
                trial_ends_at=candidate.trial_ends_at,
                now=now,
            )

    # -- Email drips -----------------------------------------------------------

    async def run_email_drips(self, now: datetime | None = None) -> dict[str, Any]:
        """Send each drip candidate the email whose window contains *now*.

        Returns the same summary shape as :meth:`run_once`.  ``disabled`` is
        ``True`` when drips are turned off or no mailer was provided.
        """
        summary: dict[str, Any] = {"disabled": False, "processed": 0, "sent": 0, "failed": 0, "skipped": 0}
        if not self._settings.email_drips_enabled or self._mailer is None:
            logger.info("Email drips disabled; skipping run")
            summary["disabled"] = True
            return summary

        mailer = self._mailer
        now = now or datetime.now(UTC)

        for candidate in await self._load_drip_candidates():
            summary["processed"] += 1
            try:
                outcome = await self._process_drip(candidate, mailer, now)
            except Exception as exc:
                logger.error(
                    "Drip processing failed for tenant %s: %s",
                    candidate.tenant_id,
                    exc,
                    exc_info=True,
                )
                summary["failed"] += 1
                continue
            summary[outcome] += 1

        logger.info(
            "Drip run complete: processed=%d sent=%d failed=%d skipped=%d",
            summary["processed"],
            summary["sent"],
            summary["failed"],
            summary["skipped"],
        )
        return summary

    async def _load_drip_candidates(self) -> list[_DripCandidate]:
        async with self._session_factory() as session:
            rows = await TenantRepository(session).list_drip_candidates()
            return [
                _DripCandidate(
                    tenant_id=tenant.tenant_id,
                    email=tenant.email or "",
                    business_name=tenant.business_name,
                    recipient=recipient_for(tenant, entitlement),
                )
                for tenant, entitlement in rows
            ]

    async def _process_drip(self, candidate: _DripCandidate, mailer: ResendEmailClient, now: datetime) -> str:
        async with session_scope(self._session_factory) as session:
            service = DripEmailService(session, self._settings, mailer)
            return await service.process_tenant(
                candidate.tenant_id,
                email=candidate.email,
                business_name=candidate.business_name,
                recipient=candidate.recipient,
                now=now,
            )
