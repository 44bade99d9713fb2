"""
Pytest tests for the retry-transfer executor and the rate governor.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from tip_settlement.errors import (
    ChainSubmissionError,
    ConfirmationAmbiguous,
    InvalidAmount,
    NonceConflict,
    RateLimited,
    TransferError,
    classify_chain_error,
    is_already_known,
)
from tip_settlement.transfer_engine import RateGovernor, TransferCallbacks, TransferExecutor

DEST = "0x" + "22" * 20


def test_success_first_attempt(executor, chain, sender):
    receipt = asyncio.run(executor.execute(sender, DEST, Decimal("1.5")))

    assert receipt.tx_reference == "0xtx1"
    assert receipt.nonce == 5
    assert receipt.attempts == 1
    assert receipt.amount == Decimal("1.5")
    assert chain.balances[DEST] == Decimal("1.5")


def test_nonce_conflict_then_success_uses_fresh_nonce(executor, chain, sender):
    """Attempt 1 hits a nonce conflict; attempt 2 succeeds with a refreshed nonce."""
    chain.submit_errors = [ValueError("nonce too low: next nonce 6, tx nonce 5")]

    receipt = asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert receipt.tx_reference == "0xtx1"
    assert receipt.attempts == 2
    assert receipt.nonce == 6
    assert chain.submitted[0].nonce == 6
    assert chain.calls.count("get_nonce") == 2
    assert chain.calls.count("submit") == 2


def test_rate_limit_is_retried(executor, chain, sender):
    chain.submit_errors = [RuntimeError("429 Too Many Requests"), None]

    receipt = asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert receipt.attempts == 2
    assert len(chain.submitted) == 1


def test_fatal_error_not_retried(executor, chain, sender):
    chain.submit_errors = [RuntimeError("insufficient funds for gas * price + value")]

    with pytest.raises(ChainSubmissionError) as exc_info:
        asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert exc_info.value.attempts == 1
    assert chain.calls.count("submit") == 1
    assert chain.submitted == []


def test_retries_exhausted(executor, chain, sender):
    chain.submit_errors = [RateLimited("rate limit")] * 3

    with pytest.raises(TransferError) as exc_info:
        asyncio.run(executor.execute(sender, DEST, Decimal("1"), max_attempts=3))

    assert not isinstance(exc_info.value, ChainSubmissionError)
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, RateLimited)
    assert chain.calls.count("submit") == 3


def test_callbacks_fire_and_failures_are_swallowed(executor, chain, sender):
    seen = []

    async def on_submitted(tx_reference):
        seen.append(("submitted", tx_reference))

    def on_awaiting(tx_reference):
        raise RuntimeError("chat message failed to send")

    def on_confirmed(receipt):
        seen.append(("confirmed", receipt.tx_reference))

    callbacks = TransferCallbacks(
        on_submitted=on_submitted,
        on_awaiting_confirmation=on_awaiting,
        on_confirmed=on_confirmed,
    )
    receipt = asyncio.run(executor.execute(sender, DEST, Decimal("1"), callbacks=callbacks))

    assert receipt.tx_reference == "0xtx1"
    assert seen == [("submitted", "0xtx1"), ("confirmed", "0xtx1")]


def test_confirmation_timeout_recovered_by_status_poll(executor, chain, sender):
    chain.confirm_errors["0xtx1"] = TimeoutError("receipt not found in 30s")
    chain.statuses["0xtx1"] = True

    receipt = asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert receipt.tx_reference == "0xtx1"
    assert "get_transaction_status" in chain.calls
    assert chain.calls.count("submit") == 1


def test_confirmation_unknown_is_ambiguous_and_not_resubmitted(executor, chain, sender):
    chain.confirm_errors["0xtx1"] = TimeoutError("receipt not found in 30s")

    with pytest.raises(ConfirmationAmbiguous) as exc_info:
        asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert exc_info.value.tx_reference == "0xtx1"
    assert chain.calls.count("submit") == 1
    assert chain.calls.count("get_transaction_status") == executor.status_poll_attempts


def test_already_known_after_rate_limit_is_not_resubmitted(executor, chain, sender):
    """The first broadcast landed despite a 429; a fresh nonce must never be tried."""
    chain.submit_errors = [RuntimeError("429 Too Many Requests"), ValueError("already known")]

    with pytest.raises(ConfirmationAmbiguous) as exc_info:
        asyncio.run(executor.execute(sender, DEST, Decimal("1")))

    assert exc_info.value.tx_reference is None
    assert exc_info.value.nonce == 5
    assert exc_info.value.attempts == 2
    assert chain.calls.count("submit") == 2
    assert chain.calls.count("get_nonce") == 2
    assert chain.submitted == []


def test_pinned_gas_price_reaches_every_attempt(executor, chain, sender):
    chain.submit_errors = [RateLimited("rate limit")]

    asyncio.run(executor.execute(sender, DEST, Decimal("1"), gas_price=7))

    assert chain.submitted[0].gas_price == 7


def test_reverted_transaction_is_submission_error(executor, chain, sender):
    chain.reverted.add("0xtx1")

    with pytest.raises(ChainSubmissionError):
        asyncio.run(executor.execute(sender, DEST, Decimal("1")))


def test_non_positive_amount_rejected(executor, chain, sender):
    with pytest.raises(InvalidAmount):
        asyncio.run(executor.execute(sender, DEST, Decimal("0")))
    assert chain.calls == []


def test_classify_chain_error():
    assert isinstance(classify_chain_error(ValueError("replacement transaction underpriced")), NonceConflict)
    assert isinstance(classify_chain_error(ValueError("max fee per gas less than block base fee")), NonceConflict)
    assert isinstance(classify_chain_error(RuntimeError("Too Many Requests")), RateLimited)
    assert classify_chain_error(RuntimeError("execution reverted")) is None
    assert classify_chain_error(ValueError("already known")) is None
    assert is_already_known(ValueError("ALREADY KNOWN"))
    assert not is_already_known(ValueError("nonce too low"))


def test_rate_governor_spaces_calls():
    async def run():
        governor = RateGovernor(0.05)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.gather(governor.wait(), governor.wait(), governor.wait())
        return loop.time() - start

    elapsed = asyncio.run(run())
    assert elapsed >= 0.09


def test_executor_defaults():
    executor = TransferExecutor(chain=None, governor=RateGovernor(0))
    assert executor.max_attempts == TransferExecutor.MAX_RETRY_ATTEMPTS
    assert executor.retry_delay == TransferExecutor.RETRY_DELAY_SECONDS
