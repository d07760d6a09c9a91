"""Tests for ingestor domain records."""

import pytest

from stacks_alert_pipeline.ingestor.models import (
    Event,
    EventType,
    Transaction,
    TransactionType,
)


class TestEventTypeFromWireFormat:
    """Tests for EventType.from_wire_format."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("FT_TRANSFER", EventType.FT_TRANSFER),
            ("ft_transfer_event", EventType.FT_TRANSFER),
            ("FTTransferEvent", EventType.FT_TRANSFER),
            ("STXTransferEvent", EventType.STX_TRANSFER),
            ("NFTMintEvent", EventType.NFT_MINT),
            ("stx_lock_event", EventType.STX_LOCK),
            ("SmartContractEvent", EventType.SMART_CONTRACT_EVENT),
            ("SMART_CONTRACT_LOG", EventType.SMART_CONTRACT_EVENT),
            ("print_event", EventType.SMART_CONTRACT_EVENT),
            ("PRINT", EventType.SMART_CONTRACT_EVENT),
        ],
    )
    def test_known_formats(self, raw: str, expected: EventType) -> None:
        assert EventType.from_wire_format(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "burnchain_op", "DataVarSetEvent"])
    def test_unknown_formats(self, raw: str | None) -> None:
        assert EventType.from_wire_format(raw) == EventType.UNKNOWN


class TestTransactionType:
    """Tests for TransactionType.from_kind."""

    def test_kind_aliases(self) -> None:
        assert TransactionType.from_kind("ContractCall") == TransactionType.CONTRACT_CALL
        assert TransactionType.from_kind("contract_call") == TransactionType.CONTRACT_CALL
        assert TransactionType.from_kind("ContractDeployment") == TransactionType.CONTRACT_DEPLOYMENT
        assert TransactionType.from_kind("smart_contract") == TransactionType.CONTRACT_DEPLOYMENT
        assert TransactionType.from_kind("Coinbase") == TransactionType.COINBASE
        assert TransactionType.from_kind("TenureChange") == TransactionType.TENURE_CHANGE

    def test_unknown_kind(self) -> None:
        assert TransactionType.from_kind(None) == TransactionType.UNKNOWN
        assert TransactionType.from_kind("Mystery") == TransactionType.UNKNOWN


class TestTransactionIdentity:
    """Transactions are identified by tx_id only."""

    def test_equal_by_tx_id(self) -> None:
        a = Transaction(tx_id="0xabc", sender="SP1", tx_type=TransactionType.CONTRACT_CALL, success=True)
        b = Transaction(tx_id="0xabc", sender="SP2", tx_type=TransactionType.COINBASE, success=False, nonce=9)
        c = Transaction(tx_id="0xdef", sender="SP1", tx_type=TransactionType.CONTRACT_CALL, success=True)

        assert a == b
        assert hash(a) == hash(b)
        assert a != c
        assert len({a, b, c}) == 2


class TestEventDescription:
    """Tests for Event.description."""

    def test_ft_transfer(self) -> None:
        event = Event(
            event_type=EventType.FT_TRANSFER,
            event_index=0,
            asset_identifier="SP1.token::tok",
            amount=500,
            sender="SP1",
            recipient="SP2",
        )
        assert event.description == "FT_TRANSFER of 500 SP1.token::tok from SP1 to SP2"

    def test_stx_transfer_defaults_asset(self) -> None:
        event = Event(event_type=EventType.STX_TRANSFER, event_index=0, amount=1, sender="SP1", recipient="SP2")
        assert "1 STX" in event.description

    def test_print_event(self) -> None:
        event = Event(
            event_type=EventType.SMART_CONTRACT_EVENT,
            event_index=3,
            contract_identifier="SP1.pool",
            topic="print",
        )
        assert event.description == "Print event from SP1.pool (topic: print)"
