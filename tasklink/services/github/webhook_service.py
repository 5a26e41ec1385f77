"""GitHub webhook handling: verification, dedupe, and dispatch to the sync engine."""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklink.core.config import settings
from tasklink.core.dispatcher import KeyedDispatcher
from tasklink.core.logging import get_logger
from tasklink.core.valkey import claim_once
from tasklink.db.models.connection import Connection, ConnectionStatus
from tasklink.db.session import AsyncSessionLocal
from tasklink.integrations.github.payloads import (
    PullRequestEvent,
    PullRequestReviewEvent,
    PushEvent,
    WebhookEnvelope,
    WebhookEvent,
    decode_event,
)
from tasklink.services.github.exceptions import ConnectionUnavailableError
from tasklink.services.github.health import ConnectionHealthMonitor
from tasklink.services.github.security import SignatureError, match_signature
from tasklink.services.github.sync_engine import SyncEngine

logger = get_logger(__name__)

DEDUPE_KEY_PREFIX = "webhook:delivery:"


class WebhookReason(str, Enum):
    PROCESSED = "PROCESSED"
    QUEUED = "QUEUED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"


@dataclass
class WebhookOutcome:
    accepted: bool
    reason: WebhookReason
    detail: str = ""
    queued: bool = False
    actions: List[str] = field(default_factory=list)

    @classmethod
    def accept(cls, reason: WebhookReason, detail: str = "", **kwargs) -> "WebhookOutcome":
        return cls(accepted=True, reason=reason, detail=detail, **kwargs)

    @classmethod
    def reject(cls, reason: WebhookReason, detail: str = "") -> "WebhookOutcome":
        return cls(accepted=False, reason=reason, detail=detail)


class WebhookProcessor:
    """
    Processes one webhook delivery.

    - Verifies the HMAC SHA-256 signature against the secret of a live
      connection for the payload's repository.
    - Drops deliveries already seen within the dedupe window.
    - push / pull_request / pull_request_review: queued on the connection's
      worker and awaited for at most ``sync_budget`` seconds.
    - Other events: acknowledged and ignored.
    """

    def __init__(
        self,
        engine: SyncEngine,
        health: ConnectionHealthMonitor,
        redis_client: redis.Redis,
        dispatcher: KeyedDispatcher,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        sync_budget: Optional[float] = None,
        dedupe_ttl: Optional[int] = None,
    ):
        self.engine = engine
        self.health = health
        self.redis = redis_client
        self.dispatcher = dispatcher
        self.session_factory = session_factory or AsyncSessionLocal
        self.sync_budget = (
            settings.WEBHOOK_SYNC_BUDGET_SECONDS if sync_budget is None else sync_budget
        )
        self.dedupe_ttl = dedupe_ttl or settings.WEBHOOK_DEDUPE_TTL_SECONDS

    async def handle(
        self,
        signature_header: Optional[str],
        raw_body: bytes,
        event_type: str,
        delivery_id: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Verify, dedupe and dispatch one delivery.

        Args:
            signature_header: The X-Hub-Signature-256 header.
            raw_body: The raw body bytes, exactly as received.
            event_type: The X-GitHub-Event header value (e.g. "push", "pull_request").
            delivery_id: The X-GitHub-Delivery header, used as dedupe fingerprint.
        """
        # 1. Verify signature against the repository's live connections
        envelope = self._envelope(raw_body)
        candidates = (
            await self._candidates(envelope.repository.full_name) if envelope else []
        )
        try:
            connection = match_signature(
                raw_body, signature_header, candidates, lambda c: c.webhook_secret
            )
        except SignatureError:
            logger.warning(
                "Rejected %s delivery %s: invalid signature", event_type, delivery_id
            )
            return WebhookOutcome.reject(WebhookReason.INVALID_SIGNATURE)

        # 2. Dedupe
        fingerprint = delivery_id or hashlib.sha256(raw_body).hexdigest()
        dedupe_key = f"{DEDUPE_KEY_PREFIX}{fingerprint}"
        if not await claim_once(self.redis, dedupe_key, self.dedupe_ttl):
            logger.info("Duplicate %s delivery %s ignored", event_type, fingerprint)
            return WebhookOutcome.accept(WebhookReason.DUPLICATE)

        # 3. Decode
        try:
            event = decode_event(event_type, json.loads(raw_body))
        except ValidationError as e:
            logger.warning(
                "Malformed %s payload for connection %s: %d errors",
                event_type,
                connection.id,
                e.error_count(),
            )
            await self.health.record_failure(
                connection.id, f"Malformed {event_type} payload"
            )
            return WebhookOutcome.reject(WebhookReason.MALFORMED_PAYLOAD)

        if event is None:
            logger.info("GitHub webhook received: %s (ignored)", event_type)
            await self.health.record_webhook_received(connection.id)
            return WebhookOutcome.accept(WebhookReason.IGNORED, event_type)

        # 4. Dispatch on the connection's worker, bounded wait
        connection_id = connection.id
        future = await self.dispatcher.submit(
            connection_id,
            lambda: self._process(connection_id, event_type, event, dedupe_key),
        )
        try:
            actions = await asyncio.wait_for(
                asyncio.shield(future), timeout=self.sync_budget
            )
        except asyncio.TimeoutError:
            future.add_done_callback(self._log_deferred)
            logger.info(
                "%s delivery for connection %s deferred after %.1fs",
                event_type,
                connection_id,
                self.sync_budget,
            )
            return WebhookOutcome.accept(WebhookReason.QUEUED, queued=True)

        return WebhookOutcome.accept(WebhookReason.PROCESSED, actions=actions)

    def _envelope(self, raw_body: bytes) -> Optional[WebhookEnvelope]:
        try:
            return WebhookEnvelope.model_validate_json(raw_body)
        except ValidationError:
            return None

    async def _candidates(self, full_name: str) -> List[Connection]:
        async with self.session_factory() as session:
            result = await session.exec(
                select(Connection).where(
                    func.lower(Connection.repository_full_name) == full_name.lower(),
                    Connection.status != ConnectionStatus.DISCONNECTED,
                )
            )
            return list(result.all())

    async def _process(
        self,
        connection_id: int,
        event_type: str,
        event: WebhookEvent,
        dedupe_key: str,
    ) -> List[str]:
        """Run one delivery; never raises, failures land on the connection."""
        try:
            actions = await self._dispatch(connection_id, event)
        except ConnectionUnavailableError:
            logger.info("Connection %s disconnected; %s skipped", connection_id, event_type)
            return ["connection disconnected"]
        except Exception as e:
            # Allow a redelivery to run again
            await self.redis.delete(dedupe_key)
            await self.health.record_failure(
                connection_id, f"{event_type} processing failed: {e}"
            )
            logger.error(
                "Processing %s for connection %s failed: %s",
                event_type,
                connection_id,
                e,
                exc_info=True,
            )
            return [f"failed: {e}"]

        await self.health.record_webhook_received(connection_id)
        return actions

    async def _dispatch(self, connection_id: int, event: WebhookEvent) -> List[str]:
        if isinstance(event, PushEvent):
            if event.deleted or event.branch is None:
                return [f"ref {event.ref} ignored"]
            actions = []
            for commit in event.commits:
                result = await self.engine.ingest_commit(
                    connection_id, commit, event.branch
                )
                actions.append(
                    f"commit {result.commit.short_sha}: "
                    f"{len(result.links_created)} links, "
                    f"{len(result.tasks_completed)} completed"
                )
            return actions

        if isinstance(event, PullRequestEvent):
            result = await self.engine.ingest_pull_request(
                connection_id, event.pull_request
            )
            return [
                f"PR #{result.pull_request.number} {event.action}: "
                f"{len(result.links_created)} links, "
                f"{len(result.tasks_completed)} completed"
            ]

        if isinstance(event, PullRequestReviewEvent):
            pull_request = await self.engine.record_review(
                connection_id, event.pull_request
            )
            if pull_request is None:
                return [f"review on unknown PR #{event.pull_request.number}"]
            return [f"PR #{pull_request.number} review {event.action}"]

        return []

    @staticmethod
    def _log_deferred(future: asyncio.Future) -> None:
        if future.cancelled():
            logger.warning("Deferred webhook job was cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error("Deferred webhook job failed: %s", error)
        else:
            logger.info("Deferred webhook job finished: %s", future.result())
