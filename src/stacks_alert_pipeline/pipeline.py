"""Main pipeline orchestrator for the Stacks alert pipeline.

This module provides the Pipeline class that wires storage, the rule
index, the payload processor and the notification dispatcher together and
runs each feed payload as one unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from stacks_alert_pipeline.alerter.channels import SlackTransport, WebhookTransport
from stacks_alert_pipeline.alerter.dispatcher import (
    DEFAULT_RETRY_GRACE,
    DispatchOutbox,
    DispatchSummary,
    NotificationDispatcher,
)
from stacks_alert_pipeline.alerter.models import NotificationTransport
from stacks_alert_pipeline.config import Settings, get_settings
from stacks_alert_pipeline.ingestor.payload import ChainhookPayload
from stacks_alert_pipeline.ingestor.processor import PayloadProcessor, ProcessingResult
from stacks_alert_pipeline.rules.index import RuleIndexProvider
from stacks_alert_pipeline.rules.matcher import RuleMatchingEngine
from stacks_alert_pipeline.rules.models import AlertRule
from stacks_alert_pipeline.storage.database import DatabaseManager
from stacks_alert_pipeline.storage.repos import (
    AlertRuleRepository,
    RawPayloadDTO,
    RawPayloadRepository,
    RawPayloadStatus,
)

logger = logging.getLogger(__name__)


class PayloadProcessingError(Exception):
    """Raised when a payload's unit of work could not be committed.

    Nothing of the payload was persisted and no notification was released;
    the upstream may redeliver it.
    """


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    payloads_processed: int = 0
    payloads_failed: int = 0
    payloads_rejected: int = 0
    payloads_replayed: int = 0
    blocks_applied: int = 0
    blocks_rolled_back: int = 0
    notifications_created: int = 0
    notifications_sent: int = 0
    notifications_dead_lettered: int = 0
    last_payload_time: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main orchestrator: feed payload in, committed state and notifications out.

    Pipeline flow:
        Payload → archive → rollbacks → applies (persist + match) → commit → dispatch

    Every payload handed to ``process_json`` is archived first in its own
    session and its outcome recorded afterwards, so payloads whose unit of
    work failed can be replayed with ``replay_payload``.

    Components not injected are built from settings in ``start()`` and
    released in ``stop()``.

    Example:
        ```python
        from stacks_alert_pipeline.pipeline import Pipeline

        async with Pipeline() as pipeline:
            result = await pipeline.process_json(payload_dict)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        db_manager: DatabaseManager | None = None,
        transports: Iterable[NotificationTransport] | None = None,
        redis: Redis | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, log notifications instead of delivering them.
                Overrides settings.dry_run.
            db_manager: Database manager to use instead of one built from settings.
            transports: Delivery transports to use instead of the configured ones.
            redis: Redis client for rule index invalidation.
            clock: Time source, mainly for tests.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db_manager = db_manager
        self._owns_db = db_manager is None
        self._redis = redis
        self._owns_redis = redis is None
        self._transports = list(transports) if transports is not None else None
        self._owns_transports = transports is None

        # Components (initialized in start())
        self._rule_provider: RuleIndexProvider | None = None
        self._processor: PayloadProcessor | None = None
        self._dispatcher: NotificationDispatcher | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def db_manager(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Pipeline is not started")
        return self._db_manager

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        logger.info("Starting pipeline...")

        try:
            self._initialize_components()
            self._stats.started_at = self._clock()
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline and release owned resources."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        await self._cleanup()
        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database connection...")
            self._db_manager = DatabaseManager(
                settings.database.url,
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
            )

        if self._redis is None and settings.redis.enabled:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)  # type: ignore[arg-type]

        self._rule_provider = RuleIndexProvider(
            self._load_active_rules,
            max_age_seconds=settings.rule_index.max_age_seconds,
            redis=self._redis,
            version_key=settings.rule_index.version_key,
            clock=self._clock,
        )
        self._processor = PayloadProcessor(
            matcher=RuleMatchingEngine(clock=self._clock),
            clock=self._clock,
        )

        if self._transports is None:
            self._transports = self._build_transports()
        self._dispatcher = NotificationDispatcher(
            self._db_manager,
            self._transports,
            max_attempts=settings.dispatch.max_attempts,
            dry_run=self._dry_run,
            clock=self._clock,
        )
        logger.info(
            "Dispatch channels: %s%s",
            ", ".join(c.value for c in self._dispatcher.channels) or "(none)",
            " [DRY RUN]" if self._dry_run else "",
        )

    def _build_transports(self) -> list[NotificationTransport]:
        """Build delivery transports based on configuration."""
        dispatch = self._settings.dispatch
        transports: list[NotificationTransport] = []
        if dispatch.webhook_enabled:
            transports.append(WebhookTransport(timeout=dispatch.http_timeout_seconds, clock=self._clock))
        if dispatch.slack_enabled:
            transports.append(SlackTransport(timeout=dispatch.http_timeout_seconds))
        return transports

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._owns_transports and self._transports:
            for transport in self._transports:
                aclose = getattr(transport, "aclose", None)
                if aclose is not None:
                    await aclose()
            self._transports = None

        if self._owns_db and self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._owns_redis and self._redis:
            await self._redis.aclose()
            self._redis = None

        self._rule_provider = None
        self._processor = None
        self._dispatcher = None
        logger.debug("Resources cleaned up")

    async def _load_active_rules(self) -> list[AlertRule]:
        async with self.db_manager.get_async_session() as session:
            return await AlertRuleRepository(session).list_active()

    def _require_running(self) -> None:
        if self._state != PipelineState.RUNNING:
            raise RuntimeError(f"Pipeline is not running (state {self._state})")

    async def init_schema(self) -> None:
        """Create all tables (development / tests; production uses Alembic)."""
        await self.db_manager.init_schema_async()

    async def process_payload(self, payload: ChainhookPayload) -> ProcessingResult:
        """Process one feed payload as a single unit of work.

        Rollbacks and applies are persisted in one transaction. Notifications
        created along the way are dispatched only after that transaction
        committed; if it did not, they are discarded.

        Raises:
            PayloadProcessingError: If the unit of work failed and was rolled back.
        """
        self._require_running()
        assert self._rule_provider is not None
        assert self._processor is not None
        assert self._dispatcher is not None

        outbox = DispatchOutbox()
        try:
            index = await self._rule_provider.get_index()
            async with self.db_manager.get_async_session() as session:
                result = await self._processor.process(session, payload, index)
                outbox.enqueue(result.notifications)
        except Exception as e:
            dropped = outbox.discard()
            self._stats.payloads_failed += 1
            self._stats.last_error = str(e)
            logger.error("Payload processing failed, %d notification(s) discarded: %s", dropped, e)
            raise PayloadProcessingError(str(e)) from e

        self._stats.payloads_processed += 1
        self._stats.blocks_applied += result.applied_blocks
        self._stats.blocks_rolled_back += result.rolled_back_blocks
        self._stats.notifications_created += len(result.notifications)
        self._stats.last_payload_time = self._clock()

        released = outbox.release()
        if released:
            self._record_dispatch(await self._dispatcher.dispatch(released))
        return result

    async def process_json(self, data: Any, *, source: str | None = None) -> ProcessingResult:
        """Archive a JSON-decoded payload, then decode and process it.

        Args:
            data: Decoded payload body.
            source: Where the payload came from (file name, endpoint), kept
                with the archived copy.

        Raises:
            ValueError: If ``data`` is not a payload object.
            PayloadProcessingError: If archiving or the unit of work failed.
        """
        self._require_running()
        try:
            async with self.db_manager.get_async_session() as session:
                archived = await RawPayloadRepository(session).insert(data, received_at=self._clock(), source=source)
        except Exception as e:
            self._stats.payloads_failed += 1
            self._stats.last_error = str(e)
            logger.error("Failed to archive payload from %s: %s", source or "(unknown)", e)
            raise PayloadProcessingError(str(e)) from e

        logger.debug("Archived payload %d from %s", archived.id, source or "(unknown)")
        return await self._process_archived(archived.id, data)

    async def replay_payload(self, payload_id: int) -> ProcessingResult:
        """Process an archived FAILED or PENDING payload again.

        Processing is idempotent, so replaying a payload whose unit of work
        did commit only produces duplicates.

        Raises:
            ValueError: If the payload is unknown or cannot be replayed.
            PayloadProcessingError: If the unit of work failed again.
        """
        self._require_running()
        async with self.db_manager.get_async_session() as session:
            repo = RawPayloadRepository(session)
            archived = await repo.get(payload_id)
            if archived is None:
                raise ValueError(f"Unknown payload {payload_id}")
            if not await repo.mark_replaying(payload_id):
                raise ValueError(f"Payload {payload_id} cannot be replayed (status {archived.status.value})")

        logger.info(
            "Replaying payload %d received at %s (replay #%d)",
            payload_id,
            archived.received_at.isoformat(),
            archived.replay_count + 1,
        )
        self._stats.payloads_replayed += 1
        return await self._process_archived(payload_id, archived.payload)

    async def list_failed_payloads(self, *, limit: int = 100) -> list[RawPayloadDTO]:
        """Archived payloads whose unit of work failed, oldest first."""
        self._require_running()
        async with self.db_manager.get_async_session() as session:
            return await RawPayloadRepository(session).list_by_status((RawPayloadStatus.FAILED,), limit=limit)

    async def _process_archived(self, payload_id: int, data: Any) -> ProcessingResult:
        try:
            payload = ChainhookPayload.from_dict(data)
        except ValueError as e:
            self._stats.payloads_rejected += 1
            await self._record_outcome(payload_id, RawPayloadStatus.REJECTED, str(e))
            raise

        try:
            result = await self.process_payload(payload)
        except PayloadProcessingError as e:
            await self._record_outcome(payload_id, RawPayloadStatus.FAILED, str(e))
            raise

        await self._record_outcome(payload_id, RawPayloadStatus.PROCESSED)
        return result

    async def _record_outcome(self, payload_id: int, status: RawPayloadStatus, error: str | None = None) -> None:
        # The row stays PENDING (and replayable) if this write fails.
        try:
            async with self.db_manager.get_async_session() as session:
                await RawPayloadRepository(session).set_status(payload_id, status, at=self._clock(), error=error)
        except Exception as e:
            logger.error("Failed to record status %s for payload %d: %s", status.value, payload_id, e)

    async def retry_pending(self, *, grace: timedelta = DEFAULT_RETRY_GRACE) -> DispatchSummary:
        """Re-drive undelivered notifications older than ``grace``."""
        self._require_running()
        assert self._dispatcher is not None
        summary = await self._dispatcher.retry_pending(grace=grace)
        self._record_dispatch(summary)
        return summary

    async def create_rule(self, rule: AlertRule) -> AlertRule:
        """Persist a new rule and invalidate the rule index."""
        self._require_running()
        assert self._rule_provider is not None
        async with self.db_manager.get_async_session() as session:
            created = await AlertRuleRepository(session).insert(rule)
        await self._rule_provider.invalidate()
        logger.info("Created rule %d (%s)", created.id, created.name)
        return created

    async def set_rule_active(self, rule_id: int, active: bool) -> bool:
        """Activate or deactivate a rule and invalidate the rule index."""
        self._require_running()
        assert self._rule_provider is not None
        async with self.db_manager.get_async_session() as session:
            updated = await AlertRuleRepository(session).set_active(rule_id, active)
        if updated:
            await self._rule_provider.invalidate()
        return updated

    def _record_dispatch(self, summary: DispatchSummary) -> None:
        self._stats.notifications_sent += summary.sent
        self._stats.notifications_dead_lettered += summary.dead_lettered

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
