"""
Pytest tests for the settlement orchestrator: one tip in, principal + fee
transfers and bookkeeping out.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from tip_settlement.errors import (
    ChainSubmissionError,
    InsufficientBalance,
    InvalidAmount,
    LedgerPersistError,
    TransferError,
)
from tip_settlement.settlement import SettlementOrchestrator, parse_amount
from tip_settlement.wallets import Wallet

FEE_ADDRESS = "0x" + "fe" * 20
SENDER_ADDRESS = "0x" + "11" * 20


def test_settle_moves_principal_and_fee(orchestrator, chain, ledger, history, sender):
    receipt = asyncio.run(orchestrator.settle(sender, "@Alice", "1.0"))

    claim = ledger.get("alice")
    assert claim is not None
    assert receipt.recipient_key == "alice"
    assert receipt.claim_address == claim.address
    assert receipt.amount == Decimal("1.0")
    assert receipt.fee_amount == Decimal("0.100")
    assert receipt.fee_collected

    assert [(tx.to_address, tx.amount) for tx in chain.submitted] == [
        (claim.address, Decimal("1.0")),
        (FEE_ADDRESS, Decimal("0.100")),
    ]
    assert chain.balances[claim.address] == Decimal("1.0")
    assert chain.balances[FEE_ADDRESS] == Decimal("0.1")
    assert chain.balances[SENDER_ADDRESS] == Decimal("8.9")

    assert claim.accrued_amount == Decimal("1.0")
    assert claim.from_identity == "1001"

    tips = history.get_tips_for_user("alice")
    assert len(tips) == 1
    assert tips[0].amount == Decimal("1.0")
    assert tips[0].fee_amount == Decimal("0.1")
    assert tips[0].tx_reference == "0xtx1"
    assert tips[0].fee_tx_reference == "0xtx2"
    assert tips[0].fee_collected is True


def test_fee_transfer_uses_next_nonce(orchestrator, chain, sender):
    receipt = asyncio.run(orchestrator.settle(sender, "alice", "1"))

    assert receipt.principal.nonce == 5
    assert receipt.fee.nonce == 6
    assert [tx.nonce for tx in chain.submitted] == [5, 6]


def test_insufficient_balance_makes_no_chain_writes(orchestrator, chain, store, history, sender):
    chain.balances[SENDER_ADDRESS] = Decimal("1.1")

    with pytest.raises(InsufficientBalance) as exc_info:
        asyncio.run(orchestrator.settle(sender, "alice", "1.0"))

    assert exc_info.value.required == Decimal("1.100005")
    assert exc_info.value.available == Decimal("1.1")
    assert chain.calls == ["get_balance"]
    assert store.claim_writes == 0
    assert history.get_statistics()['total_tips'] == 0


def test_invalid_amount_rejected_before_chain(orchestrator, chain, sender):
    for value in ("0", "-1", "abc", "NaN", None):
        with pytest.raises(InvalidAmount):
            asyncio.run(orchestrator.settle(sender, "alice", value))
    assert chain.calls == []


def test_fee_failure_keeps_tip_and_reports(orchestrator, chain, ledger, history, sender):
    chain.submit_errors = [None, RuntimeError("execution reverted: out of gas")]

    receipt = asyncio.run(orchestrator.settle(sender, "alice", "2"))

    assert receipt.fee is None
    assert isinstance(receipt.fee_error, ChainSubmissionError)
    assert not receipt.fee_collected
    assert ledger.get("alice").accrued_amount == Decimal("2")

    tips = history.get_tips_for_user("alice")
    assert len(tips) == 1
    assert tips[0].fee_collected is False
    assert [t.tx_reference for t in history.get_uncollected_fees()] == ["0xtx1"]

    errors = history.get_errors('uncollected_fee')
    assert len(errors) == 1
    assert errors[0]['transaction_signature'] == "0xtx1"

    stats = history.get_statistics()
    assert stats['fees_collected'] == Decimal("0")
    assert stats['fees_uncollected'] == Decimal("0.2")
    assert stats['tips_missing_fee'] == 1


def test_accrual_persist_failure_still_records_tip(orchestrator, chain, ledger, store, history, sender):
    async def run():
        await ledger.get_or_create("alice")
        store.fail_claim_writes = True
        return await orchestrator.settle(sender, "alice", "1")

    with pytest.raises(LedgerPersistError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.tx_reference == "0xtx1"
    assert exc_info.value.receipt.fee_collected
    assert ledger.get("alice").accrued_amount == Decimal("0")
    assert len(history.get_errors('ledger_persist')) == 1

    tips = history.get_tips_for_user("alice")
    assert len(tips) == 1
    assert tips[0].tx_reference == "0xtx1"
    assert tips[0].fee_collected is True


def test_tip_record_failure_still_accrues(orchestrator, ledger, history, monkeypatch, sender):
    monkeypatch.setattr(history, "record_tip", lambda record: False)

    with pytest.raises(LedgerPersistError) as exc_info:
        asyncio.run(orchestrator.settle(sender, "alice", "1"))

    assert exc_info.value.tx_reference == "0xtx1"
    assert ledger.get("alice").accrued_amount == Decimal("1")
    assert len(history.get_errors('tip_record')) == 1


def test_balance_read_failure_is_transfer_error(orchestrator, chain, store, sender):
    chain.balance_error = ConnectionError("rpc down")

    with pytest.raises(TransferError) as exc_info:
        asyncio.run(orchestrator.settle(sender, "alice", "1"))

    assert isinstance(exc_info.value.cause, ConnectionError)
    assert "submit" not in chain.calls
    assert store.claim_writes == 0


def test_zero_fee_rate_skips_fee_transfer(chain, executor, ledger, history, config, sender):
    orchestrator = SettlementOrchestrator(chain, executor, ledger, history, replace(config, fee_rate=Decimal("0")))

    receipt = asyncio.run(orchestrator.settle(sender, "bob", "1"))

    assert len(chain.submitted) == 1
    assert receipt.fee is None
    assert receipt.fee_collected


def test_sweep_reserves_network_costs(orchestrator, chain):
    wallet = Wallet(identity="alice", address="0x" + "33" * 20, private_key="0x" + "cd" * 32)
    chain.balances[wallet.address] = Decimal("1.0")

    receipt = asyncio.run(orchestrator.sweep(wallet, "0x" + "44" * 20))

    assert receipt.amount == Decimal("0.999979")
    assert chain.balances[wallet.address] == Decimal("0.000021")


def test_sweep_signs_with_the_estimated_gas_price(orchestrator, chain):
    wallet = Wallet(identity="alice", address="0x" + "33" * 20, private_key="0x" + "cd" * 32)
    chain.balances[wallet.address] = Decimal("1.0")
    chain.gas_price = 52_000_000_000

    asyncio.run(orchestrator.sweep(wallet, "0x" + "44" * 20))

    assert chain.estimated[0].gas_price == 52_000_000_000
    assert chain.submitted[0].gas_price == 52_000_000_000


def test_sweep_fee_estimate_failure_is_transfer_error(orchestrator, chain, monkeypatch):
    wallet = Wallet(identity="alice", address="0x" + "33" * 20, private_key="0x" + "cd" * 32)
    chain.balances[wallet.address] = Decimal("1.0")

    async def broken_estimate(tx):
        raise TimeoutError("eth_gasPrice timed out")

    monkeypatch.setattr(chain, "estimate_fee", broken_estimate)

    with pytest.raises(TransferError):
        asyncio.run(orchestrator.sweep(wallet, "0x" + "44" * 20))
    assert chain.submitted == []


def test_sweep_rejects_dust(orchestrator, chain):
    wallet = Wallet(identity="alice", address="0x" + "33" * 20, private_key="0x" + "cd" * 32)
    chain.balances[wallet.address] = Decimal("0.00001")

    with pytest.raises(InsufficientBalance):
        asyncio.run(orchestrator.sweep(wallet, "0x" + "44" * 20))
    assert chain.submitted == []


def test_parse_amount():
    assert parse_amount(" 1.5 ") == Decimal("1.5")
    assert parse_amount(2) == Decimal("2")
    with pytest.raises(InvalidAmount):
        parse_amount("Infinity")
