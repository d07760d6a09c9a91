"""Typed view of the chain event feed payload.

The feed delivers ``{"apply": [...], "rollback": [...]}`` where each entry
is a block event. Nothing is validated or converted here beyond shape;
``PayloadParser`` turns these into domain records.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    with contextlib.suppress(TypeError, ValueError):
        return int(value)
    return None


@dataclass(frozen=True)
class BlockIdentifier:
    hash: str | None
    index: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockIdentifier:
        return cls(hash=data.get("hash"), index=_as_int(data.get("index")))


@dataclass(frozen=True)
class EventPayload:
    """A receipt event: ``{"type": ..., "data": {...}, "position": {"index": n}}``."""

    type: str | None
    data: dict[str, Any]
    position: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventPayload:
        return cls(
            type=data.get("type"),
            data=_as_dict(data.get("data")),
            position=_as_int(_as_dict(data.get("position")).get("index")),
        )


@dataclass(frozen=True)
class TransactionPayload:
    """A transaction entry of a block event."""

    tx_hash: str | None
    metadata: dict[str, Any]
    events: tuple[EventPayload, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionPayload:
        metadata = _as_dict(data.get("metadata"))
        receipt = _as_dict(metadata.get("receipt"))
        return cls(
            tx_hash=_as_dict(data.get("transaction_identifier")).get("hash"),
            metadata=metadata,
            events=tuple(EventPayload.from_dict(e) for e in _as_list(receipt.get("events")) if isinstance(e, dict)),
        )

    @property
    def kind(self) -> dict[str, Any]:
        return _as_dict(self.metadata.get("kind"))


@dataclass(frozen=True)
class BlockEvent:
    """One block to apply or roll back."""

    block_identifier: BlockIdentifier
    parent_block_identifier: BlockIdentifier | None
    timestamp: int | None
    metadata: dict[str, Any]
    transactions: tuple[TransactionPayload, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockEvent:
        parent = data.get("parent_block_identifier")
        return cls(
            block_identifier=BlockIdentifier.from_dict(_as_dict(data.get("block_identifier"))),
            parent_block_identifier=BlockIdentifier.from_dict(parent) if isinstance(parent, dict) else None,
            timestamp=_as_int(data.get("timestamp")),
            metadata=_as_dict(data.get("metadata")),
            transactions=tuple(
                TransactionPayload.from_dict(t) for t in _as_list(data.get("transactions")) if isinstance(t, dict)
            ),
        )

    @property
    def block_hash(self) -> str | None:
        return self.block_identifier.hash


@dataclass(frozen=True)
class ChainhookPayload:
    """A feed delivery: blocks to roll back and blocks to apply."""

    apply: tuple[BlockEvent, ...] = ()
    rollback: tuple[BlockEvent, ...] = ()
    chainhook: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainhookPayload:
        """Create a payload from decoded feed JSON.

        Raises:
            ValueError: If the top-level value is not an object.
        """
        if not isinstance(data, dict):
            raise ValueError("Feed payload must be a JSON object")
        return cls(
            apply=tuple(BlockEvent.from_dict(b) for b in _as_list(data.get("apply")) if isinstance(b, dict)),
            rollback=tuple(BlockEvent.from_dict(b) for b in _as_list(data.get("rollback")) if isinstance(b, dict)),
            chainhook=_as_dict(data.get("chainhook")),
        )
