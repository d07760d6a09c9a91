"""Storage layer - Database schemas and repositories."""

from stacks_alert_pipeline.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from stacks_alert_pipeline.storage.models import (
    AlertNotificationModel,
    AlertRuleModel,
    Base,
    BlockModel,
    DeadLetterEntryModel,
    EventModel,
    RawPayloadModel,
    TransactionModel,
)
from stacks_alert_pipeline.storage.repos import (
    AlertNotificationDTO,
    AlertNotificationRepository,
    AlertRuleRepository,
    BlockDTO,
    BlockRepository,
    DeadLetterEntryDTO,
    DeadLetterRepository,
    RawPayloadDTO,
    RawPayloadRepository,
    RawPayloadStatus,
    TransactionDTO,
    TransactionRepository,
    cascade_soft_delete,
)

__all__ = [
    "AlertNotificationDTO",
    "AlertNotificationModel",
    "AlertNotificationRepository",
    "AlertRuleModel",
    "AlertRuleRepository",
    "Base",
    "BlockDTO",
    "BlockModel",
    "BlockRepository",
    "DatabaseManager",
    "DeadLetterEntryDTO",
    "DeadLetterEntryModel",
    "DeadLetterRepository",
    "EventModel",
    "RawPayloadDTO",
    "RawPayloadModel",
    "RawPayloadRepository",
    "RawPayloadStatus",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "cascade_soft_delete",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
