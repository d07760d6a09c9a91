"""Conversion of feed payload entries into domain records."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from stacks_alert_pipeline.ingestor.models import (
    Block,
    ContractCall,
    ContractDeployment,
    Event,
    EventType,
    ExecutionCost,
    Transaction,
    TransactionType,
)
from stacks_alert_pipeline.ingestor.payload import BlockEvent, EventPayload, TransactionPayload

logger = logging.getLogger(__name__)

ASSET_SEPARATOR = "::"


class PayloadParseError(Exception):
    """Raised when a block or transaction entry cannot be turned into a record."""


def _to_int(value: Any, field_name: str, *, default: int = 0) -> int:
    """Parse an integer amount; invalid values become ``default`` with a warning."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        logger.warning("Invalid %s value %r, using %d", field_name, value, default)
        return default
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        logger.warning("Invalid %s value %r, using %d", field_name, value, default)
        return default


def _to_optional_int(value: Any, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    return _to_int(value, field_name)


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _epoch_to_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Invalid timestamp value %r", value)
        return None


def contract_from_asset(asset_identifier: str | None) -> str | None:
    """Derive ``SP...contract`` from an asset identifier ``SP...contract::token``."""
    if not asset_identifier or ASSET_SEPARATOR not in asset_identifier:
        return None
    return asset_identifier.rsplit(ASSET_SEPARATOR, 1)[0]


class PayloadParser:
    """Builds Block/Transaction/Event records from feed payload entries.

    Event entries of unknown type are dropped with a warning. Invalid
    numeric fields fall back to zero. A transaction without an id raises
    ``PayloadParseError`` so the caller can skip just that transaction.
    """

    def parse_block(self, block_event: BlockEvent) -> Block:
        """Parse the block header of ``block_event`` (transactions not included).

        Raises:
            PayloadParseError: If the block hash or height is missing.
        """
        ident = block_event.block_identifier
        if not ident.hash:
            raise PayloadParseError("Block event has no block hash")
        if ident.index is None:
            raise PayloadParseError(f"Block {ident.hash} has no height")

        meta = block_event.metadata
        parent = block_event.parent_block_identifier
        timestamp = _epoch_to_datetime(block_event.timestamp)
        if timestamp is None:
            logger.warning("Block %s has no valid timestamp, using current time", ident.hash)
            timestamp = datetime.now(UTC)

        # Newer feeds nest the burn block under bitcoin_anchor_block_identifier.
        anchor = meta.get("bitcoin_anchor_block_identifier")
        if isinstance(anchor, dict):
            burn_height, burn_hash = anchor.get("index"), anchor.get("hash")
        else:
            burn_height, burn_hash = meta.get("burn_block_height"), meta.get("burn_block_hash")

        return Block(
            block_hash=ident.hash,
            height=ident.index,
            timestamp=timestamp,
            parent_hash=parent.hash if parent else None,
            burn_block_height=_to_optional_int(burn_height, "burn_block_height"),
            burn_block_hash=burn_hash,
            burn_block_time=_epoch_to_datetime(meta.get("burn_block_time")),
            miner_address=meta.get("miner"),
        )

    def parse_transaction(self, payload: TransactionPayload) -> Transaction:
        """Parse one transaction with its events and call/deployment payload.

        Raises:
            PayloadParseError: If the transaction id is missing.
        """
        if not payload.tx_hash:
            raise PayloadParseError("Transaction has no transaction_identifier.hash")

        meta = payload.metadata
        kind = payload.kind
        tx_type = TransactionType.from_kind(kind.get("type"))
        kind_data = kind.get("data") if isinstance(kind.get("data"), dict) else {}

        contract_call = None
        contract_deployment = None
        if tx_type == TransactionType.CONTRACT_CALL:
            contract_call = self._parse_contract_call(payload.tx_hash, kind_data)
        elif tx_type == TransactionType.CONTRACT_DEPLOYMENT:
            contract_deployment = self._parse_contract_deployment(payload.tx_hash, kind_data)

        position = meta.get("position") if isinstance(meta.get("position"), dict) else {}
        cost = meta.get("execution_cost") if isinstance(meta.get("execution_cost"), dict) else {}

        events = []
        seen_indexes: set[int] = set()
        for fallback_index, event_payload in enumerate(payload.events):
            event = self.parse_event(event_payload, fallback_index)
            if event is None:
                continue
            if event.event_index in seen_indexes:
                logger.warning("Duplicate event index %d in tx %s dropped", event.event_index, payload.tx_hash)
                continue
            seen_indexes.add(event.event_index)
            events.append(event)

        return Transaction(
            tx_id=payload.tx_hash,
            sender=str(meta.get("sender") or ""),
            sponsor=meta.get("sponsor"),
            tx_type=tx_type,
            success=bool(meta.get("success", False)),
            tx_index=_to_int(position.get("index"), "position.index"),
            nonce=_to_int(meta.get("nonce"), "nonce"),
            fee_micro_stx=_to_int(meta.get("fee"), "fee"),
            execution_cost=ExecutionCost(
                read_count=_to_optional_int(cost.get("read_count"), "read_count"),
                read_length=_to_optional_int(cost.get("read_length"), "read_length"),
                runtime=_to_optional_int(cost.get("runtime"), "runtime"),
                write_count=_to_optional_int(cost.get("write_count"), "write_count"),
                write_length=_to_optional_int(cost.get("write_length"), "write_length"),
            ),
            raw_result=_to_text(meta.get("result")),
            raw_tx=_to_text(meta.get("raw_tx")),
            events=tuple(events),
            contract_call=contract_call,
            contract_deployment=contract_deployment,
        )

    def parse_event(self, payload: EventPayload, fallback_index: int) -> Event | None:
        """Parse a receipt event, or return None for unknown event types."""
        event_type = EventType.from_wire_format(payload.type)
        if event_type == EventType.UNKNOWN:
            logger.warning("Dropping event with unknown type %r", payload.type)
            return None

        data = payload.data
        index = payload.position if payload.position is not None else fallback_index
        asset = data.get("asset_identifier")
        contract = data.get("contract_identifier") or contract_from_asset(asset)

        if event_type == EventType.SMART_CONTRACT_EVENT:
            value = data.get("value")
            return Event(
                event_type=event_type,
                event_index=index,
                contract_identifier=contract,
                topic=data.get("topic"),
                value=_to_text(value),
                raw_value=_to_text(data.get("raw_value")),
            )
        if event_type == EventType.STX_LOCK:
            return Event(
                event_type=event_type,
                event_index=index,
                contract_identifier=contract,
                locked_amount=_to_int(data.get("locked_amount"), "locked_amount"),
                unlock_height=_to_optional_int(data.get("unlock_height"), "unlock_height"),
                locked_address=data.get("locked_address") or data.get("address"),
            )
        if event_type in (EventType.NFT_TRANSFER, EventType.NFT_MINT, EventType.NFT_BURN):
            return Event(
                event_type=event_type,
                event_index=index,
                contract_identifier=contract,
                asset_identifier=asset,
                sender=data.get("sender"),
                recipient=data.get("recipient"),
                value=_to_text(data.get("value")),
                raw_value=_to_text(data.get("raw_value")),
            )
        return Event(
            event_type=event_type,
            event_index=index,
            contract_identifier=contract,
            asset_identifier=asset,
            amount=_to_int(data.get("amount"), "amount"),
            sender=data.get("sender"),
            recipient=data.get("recipient"),
        )

    def _parse_contract_call(self, tx_id: str, data: dict[str, Any]) -> ContractCall | None:
        contract = data.get("contract_identifier")
        method = data.get("method") or data.get("function_name")
        if not contract or not method:
            logger.warning("Contract call %s is missing contract or method", tx_id)
            return None
        args = data.get("args") or []
        if not isinstance(args, list):
            args = [args]
        return ContractCall(
            contract_identifier=contract,
            function_name=method,
            function_args=tuple(str(a) for a in args),
        )

    def _parse_contract_deployment(self, tx_id: str, data: dict[str, Any]) -> ContractDeployment | None:
        contract = data.get("contract_identifier")
        if not contract:
            logger.warning("Contract deployment %s is missing contract_identifier", tx_id)
            return None
        name = data.get("contract_name") or contract.rsplit(".", 1)[-1]
        return ContractDeployment(
            contract_identifier=contract,
            contract_name=name,
            source_code=data.get("code") or data.get("source_code"),
            abi=_to_text(data.get("abi")),
        )
