"""
dispatcher.py — Send one notification and record the outcome.

Flow per call:

    1. Eligibility   no device token / notifications disabled → skipped
    2. Channel       push server key missing                  → skipped
    3. Delivery      provider success > 0 → sent, else failed
    4. Exception     provider raised → failed; re-raised as
                     NotificationDeliveryError when raise_errors=True
    5. Audit         exactly one NotificationRecord, own transaction

The audit write is independent of the caller's session so a failing
dispatch never rolls back pipeline state, and a retried job leaves one
record per attempt.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from avalanche_watch.app.alerts.channels.push import PushChannel
from avalanche_watch.app.alerts.models import (
    DispatchOutcome,
    DispatchStatus,
    NotificationKind,
)
from avalanche_watch.app.core.database import session_scope
from avalanche_watch.app.core.errors import NotificationDeliveryError
from avalanche_watch.app.storage.models import NotificationRecord, Subscriber

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self, channel: PushChannel, session_factory: Optional[sessionmaker] = None):
        self.channel = channel
        self._session_factory = session_factory

    def send(
        self,
        subscriber: Subscriber,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        kind: NotificationKind,
        location_id: Optional[int] = None,
        raise_errors: bool = False,
    ) -> DispatchOutcome:
        log_extra = {"subscriber_id": subscriber.id, "location_id": location_id}

        skip_reason = self._skip_reason(subscriber)
        if skip_reason:
            logger.info("Notification skipped: %s", skip_reason, extra=log_extra)
            return self._finish(
                subscriber, kind, DispatchStatus.SKIPPED, title, body, metadata,
                location_id, reason=skip_reason,
            )

        try:
            response = self.channel.deliver(subscriber.device_token, title, body, metadata)
        except Exception as exc:
            logger.error("Push delivery raised: %s", exc, extra=log_extra)
            self._finish(
                subscriber, kind, DispatchStatus.FAILED, title, body, metadata,
                location_id, reason=str(exc),
            )
            if raise_errors:
                raise NotificationDeliveryError(subscriber.id, str(exc)) from exc
            return DispatchOutcome(
                status=DispatchStatus.FAILED, subscriber_id=subscriber.id,
                kind=kind, reason=str(exc),
            )

        if response.delivered:
            logger.info("Notification sent (%s)", kind.value, extra=log_extra)
            return self._finish(
                subscriber, kind, DispatchStatus.SENT, title, body, metadata, location_id,
            )

        reason = f"provider reported success=0 failure={response.failure}"
        logger.error("Push provider rejected notification: %s", reason, extra=log_extra)
        return self._finish(
            subscriber, kind, DispatchStatus.FAILED, title, body, metadata,
            location_id, reason=reason,
        )

    # ── Internals ──

    def _skip_reason(self, subscriber: Subscriber) -> str:
        if not subscriber.device_token:
            return "no_device_token"
        if not subscriber.notifications_enabled:
            return "notifications_disabled"
        if not self.channel.configured:
            logger.warning("Push server key not configured — skipping notification")
            return "push_not_configured"
        return ""

    def _finish(
        self,
        subscriber: Subscriber,
        kind: NotificationKind,
        status: DispatchStatus,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]],
        location_id: Optional[int],
        *,
        reason: str = "",
    ) -> DispatchOutcome:
        outcome = DispatchOutcome(
            status=status, subscriber_id=subscriber.id, kind=kind, reason=reason,
        )
        record = NotificationRecord(
            subscriber_id=subscriber.id,
            location_id=location_id,
            kind=kind.value,
            title=title,
            message=body,
            data=metadata,
            status=status.value,
            error=reason or None,
        )
        try:
            with session_scope(self._session_factory) as session:
                session.add(record)
                session.flush()
                outcome.record_id = record.id
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to record notification: %s", exc,
                extra={"subscriber_id": subscriber.id},
            )
        return outcome
