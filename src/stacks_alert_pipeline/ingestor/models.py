"""Domain records for ingested chain data."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_EVENT_SUFFIX = "_EVENT"


class EventType(str, Enum):
    """Typed sub-event kinds emitted by Stacks transactions."""

    FT_MINT = "FT_MINT"
    FT_BURN = "FT_BURN"
    FT_TRANSFER = "FT_TRANSFER"
    NFT_MINT = "NFT_MINT"
    NFT_BURN = "NFT_BURN"
    NFT_TRANSFER = "NFT_TRANSFER"
    STX_TRANSFER = "STX_TRANSFER"
    STX_MINT = "STX_MINT"
    STX_BURN = "STX_BURN"
    STX_LOCK = "STX_LOCK"
    SMART_CONTRACT_EVENT = "SMART_CONTRACT_EVENT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_wire_format(cls, raw: str | None) -> EventType:
        """Map a feed event type string to an EventType.

        Matching is case-insensitive, accepts CamelCase (``FTTransferEvent``)
        and an optional ``_event`` suffix. Print events arrive under several
        names. Anything unrecognised maps to UNKNOWN.

        Example:
            >>> EventType.from_wire_format("ft_transfer_event")
            <EventType.FT_TRANSFER: 'FT_TRANSFER'>
        """
        if raw is None:
            return cls.UNKNOWN
        value = raw.strip()
        if not value:
            return cls.UNKNOWN

        value = _CAMEL_BOUNDARY.sub("_", value).replace("-", "_").upper()
        if value in _PRINT_ALIASES:
            return cls.SMART_CONTRACT_EVENT
        if value.endswith(_EVENT_SUFFIX):
            value = value[: -len(_EVENT_SUFFIX)]
        if value in _PRINT_ALIASES:
            return cls.SMART_CONTRACT_EVENT

        try:
            member = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return member


_PRINT_ALIASES = frozenset(
    {"SMART_CONTRACT", "SMART_CONTRACT_EVENT", "SMART_CONTRACT_LOG", "PRINT", "PRINT_EVENT", "CONTRACT_EVENT"}
)


class TransactionType(str, Enum):
    """Stacks transaction kinds."""

    TOKEN_TRANSFER = "TOKEN_TRANSFER"
    CONTRACT_CALL = "CONTRACT_CALL"
    CONTRACT_DEPLOYMENT = "CONTRACT_DEPLOYMENT"
    COINBASE = "COINBASE"
    POISON_MICROBLOCK = "POISON_MICROBLOCK"
    TENURE_CHANGE = "TENURE_CHANGE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_kind(cls, kind: str | None) -> TransactionType:
        """Map a feed ``kind.type`` value (``ContractCall``, ``coinbase`` ...)."""
        if not kind:
            return cls.UNKNOWN
        key = kind.replace("_", "").replace("-", "").strip().lower()
        return _KIND_ALIASES.get(key, cls.UNKNOWN)


_KIND_ALIASES = {
    "tokentransfer": TransactionType.TOKEN_TRANSFER,
    "contractcall": TransactionType.CONTRACT_CALL,
    "contractdeployment": TransactionType.CONTRACT_DEPLOYMENT,
    "smartcontract": TransactionType.CONTRACT_DEPLOYMENT,
    "coinbase": TransactionType.COINBASE,
    "poisonmicroblock": TransactionType.POISON_MICROBLOCK,
    "tenurechange": TransactionType.TENURE_CHANGE,
}


@dataclass(frozen=True)
class Event:
    """A typed sub-event of a transaction.

    Only the fields relevant to ``event_type`` are populated.
    """

    event_type: EventType
    event_index: int
    contract_identifier: str | None = None
    asset_identifier: str | None = None
    amount: int | None = None
    sender: str | None = None
    recipient: str | None = None
    value: str | None = None
    raw_value: str | None = None
    topic: str | None = None
    locked_amount: int | None = None
    unlock_height: int | None = None
    locked_address: str | None = None

    @property
    def description(self) -> str:
        """Human-readable one-line summary of the event."""
        et = self.event_type
        if et in (EventType.FT_TRANSFER, EventType.STX_TRANSFER):
            asset = self.asset_identifier or "STX"
            return f"{et.value} of {self.amount} {asset} from {self.sender} to {self.recipient}"
        if et in (EventType.FT_MINT, EventType.STX_MINT):
            return f"{et.value} of {self.amount} {self.asset_identifier or 'STX'} to {self.recipient}"
        if et in (EventType.FT_BURN, EventType.STX_BURN):
            return f"{et.value} of {self.amount} {self.asset_identifier or 'STX'} from {self.sender}"
        if et == EventType.NFT_TRANSFER:
            return f"NFT_TRANSFER of {self.asset_identifier} {self.value} from {self.sender} to {self.recipient}"
        if et == EventType.NFT_MINT:
            return f"NFT_MINT of {self.asset_identifier} {self.value} to {self.recipient}"
        if et == EventType.NFT_BURN:
            return f"NFT_BURN of {self.asset_identifier} {self.value} from {self.sender}"
        if et == EventType.STX_LOCK:
            return f"STX_LOCK of {self.locked_amount} by {self.locked_address} until {self.unlock_height}"
        if et == EventType.SMART_CONTRACT_EVENT:
            return f"Print event from {self.contract_identifier} (topic: {self.topic})"
        return et.value


@dataclass(frozen=True)
class ContractCall:
    """Contract call payload of a CONTRACT_CALL transaction."""

    contract_identifier: str
    function_name: str
    function_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContractDeployment:
    """Contract deployment payload of a CONTRACT_DEPLOYMENT transaction."""

    contract_identifier: str
    contract_name: str | None = None
    source_code: str | None = None
    abi: str | None = None


@dataclass(frozen=True)
class ExecutionCost:
    read_count: int | None = None
    read_length: int | None = None
    runtime: int | None = None
    write_count: int | None = None
    write_length: int | None = None


@dataclass(frozen=True, eq=False)
class Transaction:
    """A Stacks transaction.

    Identity is the chain ``tx_id``: two instances with the same id are
    equal and hash alike whether or not either has been persisted.
    """

    tx_id: str
    sender: str
    tx_type: TransactionType
    success: bool
    tx_index: int = 0
    nonce: int = 0
    fee_micro_stx: int = 0
    sponsor: str | None = None
    execution_cost: ExecutionCost = field(default_factory=ExecutionCost)
    raw_result: str | None = None
    raw_tx: str | None = None
    events: tuple[Event, ...] = ()
    contract_call: ContractCall | None = None
    contract_deployment: ContractDeployment | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Transaction):
            return NotImplemented
        return self.tx_id == other.tx_id

    def __hash__(self) -> int:
        return hash(self.tx_id)


@dataclass(frozen=True)
class Block:
    """A Stacks block with its ordered transactions."""

    block_hash: str
    height: int
    timestamp: datetime
    parent_hash: str | None = None
    burn_block_height: int | None = None
    burn_block_hash: str | None = None
    burn_block_time: datetime | None = None
    miner_address: str | None = None
    transactions: tuple[Transaction, ...] = ()
