"""
Dispatch engine wiring.

Builds the ledger, location index, selector, round store, gateway,
coordinator and reaper from one Settings object. The app keeps a single
instance on `app.state`; tests build their own against SQLite and a fake Redis.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from dispatch_backend.app.core.config import Settings, settings as default_settings
from dispatch_backend.app.core.reliability import CircuitBreaker
from dispatch_backend.app.services.capability import CapabilityLookup
from dispatch_backend.app.services.candidate_selector import CandidateSelector
from dispatch_backend.app.services.coordinator import AssignmentCoordinator
from dispatch_backend.app.services.expiry_reaper import ExpiryReaper
from dispatch_backend.app.services.geo_index import GeoIndex
from dispatch_backend.app.services.notification_gateway import InAppNotificationGateway, NotificationGateway
from dispatch_backend.app.services.request_ledger import RequestLedger
from dispatch_backend.app.services.round_store import RoundStore


class DispatchEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis,
        settings: Optional[Settings] = None,
        gateway: Optional[NotificationGateway] = None,
        capability_lookup: Optional[CapabilityLookup] = None,
    ):
        self.settings = settings or default_settings
        self.ledger = RequestLedger(
            session_factory,
            retry_attempts=self.settings.ledger_retry_attempts,
            retry_base_delay=self.settings.ledger_retry_base_delay_seconds,
        )
        self.geo_index = GeoIndex(
            session_factory,
            staleness_threshold_seconds=self.settings.staleness_threshold_seconds,
            capability_lookup=capability_lookup,
        )
        self.selector = CandidateSelector(self.geo_index, self.ledger)
        self.round_store = RoundStore(redis, ttl_seconds=self.settings.round_record_ttl_seconds)
        self.gateway = gateway or InAppNotificationGateway(
            session_factory,
            CircuitBreaker(
                failure_threshold=self.settings.notification_failure_threshold,
                reset_timeout=self.settings.notification_reset_timeout_seconds,
            ),
        )
        self.coordinator = AssignmentCoordinator(
            self.ledger,
            self.selector,
            self.geo_index,
            self.round_store,
            self.gateway,
            self.settings,
        )
        self.reaper = ExpiryReaper(self.ledger, self.coordinator, self.settings)

    def start(self) -> None:
        if self.settings.reaper_enabled:
            self.reaper.start()

    async def stop(self) -> None:
        await self.reaper.stop()
        await self.coordinator.shutdown()
