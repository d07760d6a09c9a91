"""Data ingestion layer - Stacks block payload parsing and persistence."""

from stacks_alert_pipeline.ingestor.models import (
    Block,
    ContractCall,
    ContractDeployment,
    Event,
    EventType,
    Transaction,
    TransactionType,
)
from stacks_alert_pipeline.ingestor.parser import PayloadParseError, PayloadParser
from stacks_alert_pipeline.ingestor.payload import BlockEvent, ChainhookPayload

__all__ = [
    "Block",
    "BlockEvent",
    "ChainhookPayload",
    "ContractCall",
    "ContractDeployment",
    "Event",
    "EventType",
    "PayloadParseError",
    "PayloadParser",
    "Transaction",
    "TransactionType",
]
