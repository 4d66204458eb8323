from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Callable, Protocol, Sequence
from uuid import uuid4

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import NotFoundError, NotificationDeliveryFailure
from abuseguard.domain.enforcement import DeliveryStatus, NotificationChannel, NotificationType
from abuseguard.domain.models import Notification, NotificationDelivery, Project
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.projects import get_project, list_members


logger = logging.getLogger(__name__)

_RECIPIENT_ROLES = ("owner", "admin")
_NON_TERMINAL_HTTP_4XX = {408, 429}
_PERMANENT_REASONS = ("invalid_recipient", "invalid recipient", "blocked", "unsubscribed", "bounced", "complained")


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str | None
    role: str


@dataclass(frozen=True)
class RenderedNotification:
    notification_type: NotificationType
    subject: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    delivery_id: str
    channel: str
    recipient: str
    success: bool
    status: str
    error: str | None = None


@dataclass(frozen=True)
class RetrySummary:
    scanned: int
    retried: int
    delivered: int
    failed: int
    dead: int

    def to_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "retried": self.retried,
            "delivered": self.delivered,
            "failed": self.failed,
            "dead": self.dead,
        }


class RecipientDirectory(Protocol):
    async def resolve(self, session: AsyncSession, project: Project) -> list[Recipient]: ...


class ProjectMemberDirectory:
    # Owners and admins recorded in project_members receive enforcement notices.
    async def resolve(self, session: AsyncSession, project: Project) -> list[Recipient]:
        members = await list_members(session, project.id, roles=_RECIPIENT_ROLES)
        recipients = [Recipient(user_id=m.user_id, email=m.email, role=m.role) for m in members]
        if not any(recipient.user_id == project.owner_id for recipient in recipients):
            recipients.insert(0, Recipient(user_id=project.owner_id, email=None, role="owner"))
        return recipients


class ChannelSender(Protocol):
    channel: NotificationChannel

    def address(self, recipient: Recipient) -> str | None: ...

    async def deliver(self, address: str, message: RenderedNotification) -> None: ...


class InAppChannel:
    # The persisted delivery row is the inbox item, so delivery is recording it.
    channel = NotificationChannel.IN_APP

    def address(self, recipient: Recipient) -> str | None:
        return recipient.user_id

    async def deliver(self, address: str, message: RenderedNotification) -> None:
        return None


class EmailChannel:
    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_url = api_url if api_url is not None else settings.email_api_url
        self._api_key = api_key if api_key is not None else settings.email_api_key
        self._sender = sender or settings.email_from
        self._timeout_s = max(0.2, settings.email_timeout_ms / 1000.0)
        self._transport = transport

    def address(self, recipient: Recipient) -> str | None:
        return recipient.email

    async def deliver(self, address: str, message: RenderedNotification) -> None:
        if not self._api_url:
            raise NotificationDeliveryFailure("Email channel is not configured", channel=self.channel.value)
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        body = {"from": self._sender, "to": [address], "subject": message.subject, "text": message.body}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._api_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryFailure(
                f"Email provider unreachable: {exc}",
                channel=self.channel.value,
            ) from exc
        if response.status_code >= 400:
            reason = response.text[:200].lower() if response.text else ""
            permanent = (
                400 <= response.status_code < 500 and response.status_code not in _NON_TERMINAL_HTTP_4XX
            ) or any(marker in reason for marker in _PERMANENT_REASONS)
            raise NotificationDeliveryFailure(
                f"Email provider rejected delivery ({response.status_code})",
                channel=self.channel.value,
                permanent=permanent,
            )


def default_channels() -> list[ChannelSender]:
    configured = [item.strip() for item in get_settings().notification_channels.split(",") if item.strip()]
    senders: list[ChannelSender] = []
    for name in configured:
        channel = NotificationChannel(name)
        senders.append(EmailChannel() if channel == NotificationChannel.EMAIL else InAppChannel())
    return senders


def retry_backoff_ms(*, delivery_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic +/-25% jitter so retries spread out reproducibly.
    settings = get_settings()
    base = max(1, int(settings.notification_backoff_base_ms))
    cap = max(base, int(settings.notification_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{delivery_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter_fraction = (int(digest[:8], 16) % 501 - 250) / 1000.0
    return max(0, min(cap, int(backoff * (1 + jitter_fraction))))


def _footer() -> str:
    settings = get_settings()
    return f"Need help? Contact {settings.support_email} or visit {settings.support_url}."


def render_suspension_notice(project: Project, reason: str, suspended_at: datetime) -> RenderedNotification:
    subject = f"Project suspended: {project.name}"
    body = "\n".join(
        [
            f"Your project {project.name} ({project.id}) in organization {project.organization_id} "
            "has been suspended.",
            f"Reason: {reason}",
            f"Suspended at: {suspended_at.astimezone(timezone.utc).isoformat()}",
            "Resource-consuming operations are blocked until the suspension is lifted.",
            _footer(),
        ]
    )
    return RenderedNotification(
        notification_type=NotificationType.PROJECT_SUSPENDED,
        subject=subject,
        body=body,
        payload={
            "project_id": project.id,
            "project_name": project.name,
            "organization_id": project.organization_id,
            "reason": reason,
            "suspended_at": suspended_at.isoformat(),
        },
    )


def render_override_notice(
    project: Project,
    *,
    action: str,
    reason: str,
    performed_at: datetime,
    previous_state: dict[str, Any],
    new_state: dict[str, Any],
) -> RenderedNotification:
    lines = [
        f"An operator applied a manual override ({action}) to project {project.name} ({project.id}).",
        f"Reason: {reason}",
        f"Applied at: {performed_at.astimezone(timezone.utc).isoformat()}",
        f"Status: {previous_state.get('status')} -> {new_state.get('status')}",
    ]
    previous_caps = previous_state.get("caps") or {}
    for resource, value in sorted((new_state.get("caps") or {}).items()):
        if previous_caps.get(resource) != value:
            lines.append(f"Cap {resource}: {previous_caps.get(resource)} -> {value}")
    lines.append(_footer())
    return RenderedNotification(
        notification_type=NotificationType.OVERRIDE_APPLIED,
        subject=f"Enforcement override applied: {project.name}",
        body="\n".join(lines),
        payload={
            "project_id": project.id,
            "action": action,
            "reason": reason,
            "performed_at": performed_at.isoformat(),
            "previous_state": previous_state,
            "new_state": new_state,
        },
    )


def render_detection_warning(
    project: Project,
    *,
    detector: str,
    severity: str,
    details: str,
    detected_at: datetime,
) -> RenderedNotification:
    body = "\n".join(
        [
            f"Unusual activity was detected on project {project.name} ({project.id}).",
            f"Detector: {detector} (severity {severity})",
            f"Details: {details}",
            f"Detected at: {detected_at.astimezone(timezone.utc).isoformat()}",
            "Continued abuse may lead to automatic suspension.",
            _footer(),
        ]
    )
    return RenderedNotification(
        notification_type=NotificationType.DETECTION_WARNING,
        subject=f"Abuse warning for project {project.name}",
        body=body,
        payload={
            "project_id": project.id,
            "detector": detector,
            "severity": severity,
            "details": details,
            "detected_at": detected_at.isoformat(),
        },
    )


class NotificationManager:
    """Decides what to send and to whom, records every delivery, and retries failures.

    Each (channel, recipient) pair gets its own delivery row and attempt, so one
    failing channel never fails the others.
    """

    def __init__(
        self,
        database: Database,
        *,
        directory: RecipientDirectory | None = None,
        channels: Sequence[ChannelSender] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self._directory = directory or ProjectMemberDirectory()
        self._channels: dict[str, ChannelSender] = {
            sender.channel.value: sender for sender in (channels if channels is not None else default_channels())
        }
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    async def send_suspension_notice(
        self,
        project_id: str,
        reason: str,
        suspended_at: datetime,
    ) -> list[DeliveryResult]:
        return await self._dispatch(
            project_id,
            lambda project: render_suspension_notice(project, reason, suspended_at),
        )

    async def send_override_notice(
        self,
        project_id: str,
        *,
        action: str,
        reason: str,
        performed_at: datetime,
        previous_state: dict[str, Any],
        new_state: dict[str, Any],
    ) -> list[DeliveryResult]:
        return await self._dispatch(
            project_id,
            lambda project: render_override_notice(
                project,
                action=action,
                reason=reason,
                performed_at=performed_at,
                previous_state=previous_state,
                new_state=new_state,
            ),
        )

    async def send_detection_warning(
        self,
        project_id: str,
        *,
        detector: str,
        severity: str,
        details: str,
        detected_at: datetime,
    ) -> list[DeliveryResult]:
        return await self._dispatch(
            project_id,
            lambda project: render_detection_warning(
                project,
                detector=detector,
                severity=severity,
                details=details,
                detected_at=detected_at,
            ),
        )

    async def _dispatch(
        self,
        project_id: str,
        render: Callable[[Project], RenderedNotification],
    ) -> list[DeliveryResult]:
        async with self._database.session() as session:
            project = await get_project(session, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
            recipients = await self._directory.resolve(session, project)
            message = render(project)
            notification = Notification(
                id=uuid4().hex,
                project_id=project_id,
                notification_type=message.notification_type.value,
                subject=message.subject,
                body=message.body,
                payload_json=message.payload,
                created_at=self._time_provider(),
            )
            session.add(notification)
            deliveries: list[NotificationDelivery] = []
            for recipient in recipients:
                for channel_name, sender in self._channels.items():
                    deliveries.append(
                        NotificationDelivery(
                            id=uuid4().hex,
                            notification_id=notification.id,
                            project_id=project_id,
                            channel=channel_name,
                            recipient=sender.address(recipient) or recipient.user_id,
                            status=DeliveryStatus.PENDING.value,
                            attempts=0,
                            created_at=self._time_provider(),
                        )
                    )
            session.add_all(deliveries)
            await session.commit()

            if not deliveries:
                logger.warning(
                    "notification_no_recipients project_id=%s type=%s",
                    project_id,
                    message.notification_type.value,
                )
            results: list[DeliveryResult] = []
            for delivery in deliveries:
                results.append(await self._attempt(session, delivery, message))
        return results

    async def _attempt(
        self,
        session: AsyncSession,
        delivery: NotificationDelivery,
        message: RenderedNotification,
        *,
        ceiling: int | None = None,
    ) -> DeliveryResult:
        now = self._time_provider()
        max_attempts = int(ceiling if ceiling is not None else get_settings().notification_max_attempts)
        attempt_no = int(delivery.attempts) + 1
        delivery.attempts = attempt_no
        delivery.last_attempt_at = now
        sender = self._channels.get(delivery.channel)
        error: str | None = None
        permanent = False
        try:
            if sender is None:
                raise NotificationDeliveryFailure(
                    f"Channel {delivery.channel} is not configured",
                    channel=delivery.channel,
                )
            if delivery.channel == NotificationChannel.EMAIL.value and "@" not in delivery.recipient:
                raise NotificationDeliveryFailure(
                    "invalid recipient: no email address on file",
                    channel=delivery.channel,
                    permanent=True,
                )
            await sender.deliver(delivery.recipient, message)
        except NotificationDeliveryFailure as exc:
            error = exc.message
            permanent = exc.permanent
        except Exception as exc:  # noqa: BLE001 - delivery failures are isolated to delivery state updates.
            error = str(exc) or type(exc).__name__

        if error is None:
            delivery.status = DeliveryStatus.DELIVERED.value
            delivery.delivered_at = now
            delivery.last_error = None
            delivery.next_attempt_at = None
        elif permanent or attempt_no >= max_attempts:
            delivery.status = DeliveryStatus.DEAD.value
            delivery.last_error = error
            delivery.next_attempt_at = None
        else:
            delivery.status = DeliveryStatus.FAILED.value
            delivery.last_error = error
            delivery.next_attempt_at = now + timedelta(
                milliseconds=retry_backoff_ms(delivery_id=delivery.id, attempt_no=attempt_no)
            )
        await session.commit()

        if error is not None:
            logger.warning(
                "notification_delivery_failed delivery_id=%s channel=%s attempt=%s status=%s error=%s",
                delivery.id,
                delivery.channel,
                attempt_no,
                delivery.status,
                error,
            )
        return DeliveryResult(
            delivery_id=delivery.id,
            channel=delivery.channel,
            recipient=delivery.recipient,
            success=error is None,
            status=delivery.status,
            error=error,
        )

    async def retry_failed_notifications(
        self,
        max_attempts: int | None = None,
        *,
        limit: int | None = None,
    ) -> RetrySummary:
        """Re-attempt failed deliveries below the attempt ceiling.

        Rows that already reached the ceiling are marked dead instead of being
        retried again. Due rows are claimed by pushing ``next_attempt_at`` past
        a lease before the lock is released, so overlapping sweeps never send
        the same delivery twice.
        """
        settings = get_settings()
        ceiling = max(1, int(max_attempts if max_attempts is not None else settings.notification_max_attempts))
        batch = max(1, int(limit or settings.notification_retry_batch_size))
        now = self._time_provider()
        lease_until = now + timedelta(seconds=max(1, int(settings.notification_claim_lease_s)))
        retried = delivered = failed = dead = 0
        async with self._database.session() as session:
            rows = (
                await session.execute(
                    select(NotificationDelivery)
                    .where(NotificationDelivery.status == DeliveryStatus.FAILED.value)
                    .where(
                        or_(
                            NotificationDelivery.next_attempt_at.is_(None),
                            NotificationDelivery.next_attempt_at <= now,
                        )
                    )
                    .order_by(NotificationDelivery.created_at)
                    .limit(batch)
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()
            for delivery in rows:
                if delivery.attempts >= ceiling:
                    delivery.status = DeliveryStatus.DEAD.value
                    delivery.next_attempt_at = None
                    dead += 1
                else:
                    delivery.next_attempt_at = lease_until
            await session.commit()

            notifications: dict[str, Notification] = {}
            for delivery in rows:
                if delivery.status == DeliveryStatus.DEAD.value:
                    continue
                notification = notifications.get(delivery.notification_id)
                if notification is None:
                    notification = await session.get(Notification, delivery.notification_id)
                    if notification is None:
                        continue
                    notifications[delivery.notification_id] = notification
                message = RenderedNotification(
                    notification_type=NotificationType(notification.notification_type),
                    subject=notification.subject,
                    body=notification.body,
                    payload=dict(notification.payload_json or {}),
                )
                retried += 1
                result = await self._attempt(session, delivery, message, ceiling=ceiling)
                if result.success:
                    delivered += 1
                elif result.status == DeliveryStatus.DEAD.value:
                    dead += 1
                else:
                    failed += 1
        summary = RetrySummary(scanned=len(rows), retried=retried, delivered=delivered, failed=failed, dead=dead)
        logger.info("notification_retry_sweep %s", " ".join(f"{k}={v}" for k, v in summary.to_dict().items()))
        return summary

    async def list_deliveries(self, project_id: str, *, status: DeliveryStatus | None = None) -> list[NotificationDelivery]:
        async with self._database.session() as session:
            stmt = select(NotificationDelivery).where(NotificationDelivery.project_id == project_id)
            if status is not None:
                stmt = stmt.where(NotificationDelivery.status == status.value)
            result = await session.execute(stmt.order_by(NotificationDelivery.created_at))
            return list(result.scalars().all())
