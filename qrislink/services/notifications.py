"""Payment notification ingestion and reporting."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Device, Notification, utc_now
from .errors import err_required_field
from .matcher import MatchResult, PaymentMatcher

logger = logging.getLogger("qrislink.notifications")


@dataclass(slots=True)
class IngestResult:
    notification: Notification
    match: MatchResult | None


class NotificationService:
    def __init__(
        self,
        session: AsyncSession,
        matcher: PaymentMatcher | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.matcher = matcher
        self.clock = clock

    async def ingest(
        self,
        *,
        device_id: str,
        package_name: str,
        app_name: str | None = None,
        posted_at: str | None = None,
        title: str | None = None,
        text: str | None = None,
        sub_text: str | None = None,
        big_text: str | None = None,
        channel_id: str | None = None,
        notification_id: int | None = None,
        amount_detected: str | None = None,
        extras: dict[str, Any] | None = None,
    ) -> IngestResult:
        """Store a notification and, when it carries an amount, try to match it."""

        if not device_id or not package_name:
            raise err_required_field("Missing required fields: device_id, package_name")

        now = self.clock()
        await self._touch_device(device_id, now)

        notification = Notification(
            device_id=device_id,
            package_name=package_name,
            app_name=app_name,
            posted_at=posted_at,
            title=title,
            text=text,
            sub_text=sub_text,
            big_text=big_text,
            channel_id=channel_id,
            notification_id=notification_id,
            amount_detected=amount_detected,
            extras=json.dumps(extras) if extras else None,
            created_at=now,
        )
        self.session.add(notification)
        await self.session.commit()
        await self.session.refresh(notification)
        logger.info(
            "notification stored",
            extra={
                "notification_id": notification.id,
                "device_id": device_id,
                "package_name": package_name,
                "amount_detected": amount_detected,
            },
        )

        match = None
        if amount_detected and self.matcher is not None:
            match = await self.matcher.match(amount_detected, title=title, text=text, big_text=big_text)
        return IngestResult(notification=notification, match=match)

    async def _touch_device(self, device_id: str, now: datetime) -> None:
        device = await self._get_device(device_id)
        if device is None:
            self.session.add(Device(device_id=device_id, last_seen=now, total_notifications=1, created_at=now))
            try:
                await self.session.commit()
                return
            except IntegrityError:
                # Registered by a concurrent request in between.
                await self.session.rollback()
                device = await self._get_device(device_id)
                if device is None:
                    raise
        device.last_seen = now
        device.total_notifications += 1
        await self.session.commit()

    async def _get_device(self, device_id: str) -> Device | None:
        result = await self.session.execute(select(Device).where(Device.device_id == device_id).limit(1))
        return result.scalars().first()

    async def list_notifications(self, *, device_id: str | None = None, limit: int = 100, offset: int = 0) -> list[Notification]:
        stmt = select(Notification)
        if device_id:
            stmt = stmt.where(Notification.device_id == device_id)
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_devices(self) -> list[Device]:
        result = await self.session.execute(select(Device).order_by(Device.last_seen.desc()))
        return list(result.scalars().all())

    async def stats(self) -> dict[str, Any]:
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        total_notifications = (await self.session.execute(select(func.count()).select_from(Notification))).scalar_one()
        total_devices = (await self.session.execute(select(func.count()).select_from(Device))).scalar_one()
        today = (
            await self.session.execute(
                select(func.count()).select_from(Notification).where(Notification.created_at >= start_of_day)
            )
        ).scalar_one()

        total = func.count().label("total")
        top_apps_stmt = (
            select(Notification.package_name, Notification.app_name, total)
            .group_by(Notification.package_name, Notification.app_name)
            .order_by(total.desc())
            .limit(10)
        )
        top_apps = [
            {"package_name": row.package_name, "app_name": row.app_name, "count": row.total}
            for row in (await self.session.execute(top_apps_stmt)).all()
        ]
        return {
            "total_notifications": total_notifications,
            "total_devices": total_devices,
            "notifications_today": today,
            "top_apps": top_apps,
        }
