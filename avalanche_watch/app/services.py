"""
Process-wide service instances, built lazily from settings.

Usage:
    from avalanche_watch.app.services import get_sync_service

    result = get_sync_service().run_sync("de")
"""

from __future__ import annotations

import logging
from typing import Optional

from avalanche_watch.app.alerts.channels.push import PushChannel
from avalanche_watch.app.alerts.dispatcher import NotificationDispatcher
from avalanche_watch.app.alerts.service import AlertService
from avalanche_watch.app.alerts.worker import DispatchWorker, NotificationJobHandler
from avalanche_watch.app.ingestion.bulletin_client import BulletinClient
from avalanche_watch.app.sync.orchestrator import BulletinSyncService

logger = logging.getLogger(__name__)

_client: Optional[BulletinClient] = None
_channel: Optional[PushChannel] = None
_worker: Optional[DispatchWorker] = None
_alert_service: Optional[AlertService] = None
_sync_service: Optional[BulletinSyncService] = None


def get_bulletin_client() -> BulletinClient:
    global _client
    if _client is None:
        _client = BulletinClient()
    return _client


def get_push_channel() -> PushChannel:
    global _channel
    if _channel is None:
        _channel = PushChannel()
    return _channel


def get_dispatch_worker(inline: bool = False) -> DispatchWorker:
    """Pool-backed worker; ``inline=True`` on first call makes it synchronous (CLI)."""
    global _worker
    if _worker is None:
        handler = NotificationJobHandler(NotificationDispatcher(get_push_channel()))
        _worker = DispatchWorker(handler, inline=inline)
    return _worker


def get_alert_service() -> AlertService:
    global _alert_service
    if _alert_service is None:
        _alert_service = AlertService(get_dispatch_worker())
    return _alert_service


def get_sync_service() -> BulletinSyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = BulletinSyncService(get_bulletin_client(), get_alert_service())
    return _sync_service


def shutdown_services() -> None:
    """Drain queued notifications and close HTTP clients."""
    global _client, _channel, _worker, _alert_service, _sync_service
    if _worker is not None:
        _worker.shutdown(wait=True)
    if _client is not None:
        _client.close()
    if _channel is not None:
        _channel.close()
    _client = _channel = _worker = _alert_service = _sync_service = None
    logger.info("Services shut down")
