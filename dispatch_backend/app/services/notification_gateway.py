"""
Notification gateway.

The coordinator talks to drivers and requesters only through this interface.
Push providers plug in as another NotificationGateway; the default writes to
the in-app notification inbox. Every method raises NotificationDeliveryFailure
on failure and the caller decides whether that matters.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from dispatch_backend.app.core.exceptions import NotificationDeliveryFailure
from dispatch_backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from dispatch_backend.app.models.notification import NotificationType
from dispatch_backend.app.schemas.offer import OfferPayload
from dispatch_backend.app.services.notification_service import NotificationService

logger = logging.getLogger("dispatch.notifications")


class NotificationGateway(ABC):

    @abstractmethod
    async def send_offer(self, driver_id: int, offer: OfferPayload) -> None:
        ...

    @abstractmethod
    async def revoke_offer(self, driver_id: int, request_id: str, reason: str) -> None:
        ...

    @abstractmethod
    async def notify_requester(
        self,
        requester_id: int,
        request_id: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class InAppNotificationGateway(NotificationGateway):
    """Writes to the notifications table behind a circuit breaker."""

    def __init__(self, session_factory: async_sessionmaker, breaker: Optional[CircuitBreaker] = None):
        self._session_factory = session_factory
        self.breaker = breaker or CircuitBreaker()

    async def _deliver(self, user_id: int, write) -> None:
        async def run():
            async with self._session_factory() as db:
                await write(db)
                await db.commit()

        try:
            await self.breaker.call(run)
        except CircuitOpenError as e:
            raise NotificationDeliveryFailure(user_id, "circuit open") from e
        except (SQLAlchemyError, OSError) as e:
            raise NotificationDeliveryFailure(user_id, str(e)) from e

    async def send_offer(self, driver_id: int, offer: OfferPayload) -> None:
        async def write(db):
            await NotificationService.create_notification(
                db,
                user_id=driver_id,
                title="New delivery offer",
                message=f"{offer.material_type} pickup at {offer.pickup.address}",
                type=NotificationType.OFFER,
                request_id=offer.request_id,
                metadata=offer.model_dump(mode="json"),
            )

        await self._deliver(driver_id, write)

    async def revoke_offer(self, driver_id: int, request_id: str, reason: str) -> None:
        async def write(db):
            revoked = await NotificationService.revoke_offers(db, driver_id, request_id)
            if revoked:
                await NotificationService.create_notification(
                    db,
                    user_id=driver_id,
                    title="Offer no longer available",
                    message=reason,
                    type=NotificationType.OFFER_REVOKED,
                    request_id=request_id,
                )

        await self._deliver(driver_id, write)

    async def notify_requester(
        self,
        requester_id: int,
        request_id: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async def write(db):
            await NotificationService.create_notification(
                db,
                user_id=requester_id,
                title=title,
                message=message,
                type=NotificationType.REQUEST_UPDATE,
                request_id=request_id,
                metadata=metadata,
            )

        await self._deliver(requester_id, write)
