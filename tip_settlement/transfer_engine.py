"""
Tip Transfer Engine

Single value transfer with contention handling:
1. Process-wide rate governor before every chain call
2. Fresh nonce from the chain for each transfer
3. Retry on nonce conflict, fee/priority rejection or rate limit
4. Fatal errors propagate immediately, never retried
5. Lifecycle callbacks (submitted, awaiting confirmation, confirmed)
6. Independent status re-poll when the confirmation wait itself fails
7. "Already known" rejections end the transfer as ambiguous, never retried
"""

import asyncio
import inspect
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional

from loguru import logger

from .chain_client import ChainClient, TransferTx
from .errors import (
    ChainSubmissionError,
    ConfirmationAmbiguous,
    InvalidAmount,
    TransferError,
    classify_chain_error,
    is_already_known,
)
from .wallets import Wallet


class RateGovernor:
    """
    Minimum spacing between chain calls, shared by the whole process

    The last-call timestamp is read and written under one lock, so concurrent
    tasks queue up instead of interleaving.
    """

    def __init__(self, min_interval: float = 0.1):
        self.min_interval = min_interval
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self):
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last_call is not None:
                elapsed = loop.time() - self._last_call
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
            self._last_call = loop.time()


_default_governor: Optional[RateGovernor] = None


def get_rate_governor(min_interval: float = 0.1) -> RateGovernor:
    """Process-wide governor, created on first use"""
    global _default_governor
    if _default_governor is None:
        _default_governor = RateGovernor(min_interval)
        logger.debug(f"Rate governor created (min interval {min_interval}s)")
    return _default_governor


@dataclass
class TransferCallbacks:
    """Optional progress hooks; sync or async callables taking one argument"""
    on_submitted: Optional[Callable] = None
    on_awaiting_confirmation: Optional[Callable] = None
    on_confirmed: Optional[Callable] = None


@dataclass
class TransactionReceipt:
    """Confirmed value transfer"""
    tx_reference: str
    from_address: str
    to_address: str
    amount: Decimal
    nonce: int
    attempts: int
    confirmed_at: datetime = None

    def __post_init__(self):
        if self.confirmed_at is None:
            self.confirmed_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['amount'] = str(self.amount)
        data['confirmed_at'] = self.confirmed_at.isoformat()
        return data


class TransferExecutor:
    """
    Executes one value transfer with retry

    Retry policy:
    - NonceConflict / RateLimited: pause, refresh nonce, retry up to max attempts
    - Already known (an earlier attempt is in the mempool): ConfirmationAmbiguous
    - Anything else: ChainSubmissionError immediately
    - Confirmation wait errored: re-poll status, ConfirmationAmbiguous if still
      unknown (never resubmitted)
    """

    # Retry settings
    MAX_RETRY_ATTEMPTS = 3
    RETRY_DELAY_SECONDS = 2.0

    # Status re-poll settings
    STATUS_POLL_ATTEMPTS = 3
    STATUS_POLL_INTERVAL_SECONDS = 2.0

    def __init__(
        self,
        chain: ChainClient,
        governor: Optional[RateGovernor] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        status_poll_attempts: Optional[int] = None,
        status_poll_interval: Optional[float] = None
    ):
        """
        Initialize executor

        Args:
            chain: Chain client
            governor: Rate governor (process-wide default if omitted)
            max_attempts: Default attempt cap per transfer
            retry_delay: Fixed backoff between attempts (seconds)
            status_poll_attempts: Status checks after an errored confirmation wait
            status_poll_interval: Seconds between status checks
        """
        self.chain = chain
        self.governor = governor or get_rate_governor()
        self.max_attempts = max_attempts or self.MAX_RETRY_ATTEMPTS
        self.retry_delay = self.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.status_poll_attempts = status_poll_attempts or self.STATUS_POLL_ATTEMPTS
        self.status_poll_interval = (
            self.STATUS_POLL_INTERVAL_SECONDS if status_poll_interval is None else status_poll_interval
        )

    @classmethod
    def from_config(cls, chain: ChainClient, config, governor: Optional[RateGovernor] = None):
        return cls(
            chain,
            governor=governor or get_rate_governor(config.min_call_interval_seconds),
            max_attempts=config.max_transfer_attempts,
            retry_delay=config.retry_delay_seconds,
            status_poll_attempts=config.status_poll_attempts,
            status_poll_interval=config.status_poll_interval_seconds,
        )

    async def _notify(self, callback: Optional[Callable], checkpoint: str, payload):
        """Run a lifecycle callback; failures are logged, never raised"""
        if callback is None:
            return
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Transfer callback '{checkpoint}' failed (ignored): {e}")

    async def _fetch_nonce(self, address: str) -> int:
        await self.governor.wait()
        try:
            return await self.chain.get_nonce(address)
        except Exception as e:
            logger.error(f"✗ Could not fetch nonce for {address[:10]}...: {e}")
            raise TransferError(f"Could not fetch nonce: {e}", cause=e)

    async def check_transaction_status(self, tx_reference: str) -> Optional[bool]:
        """
        Re-poll a transaction until its outcome is known

        Args:
            tx_reference: Transaction reference

        Returns:
            True if confirmed, False if reverted, None if still unknown
        """
        for attempt in range(1, self.status_poll_attempts + 1):
            try:
                await self.governor.wait()
                status = await self.chain.get_transaction_status(tx_reference)
                if status is not None:
                    return status
            except Exception as e:
                logger.debug(f"Error checking transaction status (attempt {attempt}): {e}")

            if attempt < self.status_poll_attempts:
                await asyncio.sleep(self.status_poll_interval)

        return None

    async def _confirm(self, tx_reference: str, attempts: int) -> None:
        """Wait for confirmation, falling back to status re-poll"""
        try:
            await self.governor.wait()
            confirmed = await self.chain.wait_for_confirmation(tx_reference)
        except Exception as e:
            logger.warning(f"⚠ Confirmation wait failed for {tx_reference}: {e}, re-checking status")
            status = await self.check_transaction_status(tx_reference)
            if status is None:
                logger.error(f"✗ Transaction {tx_reference} outcome unknown, not resubmitting")
                raise ConfirmationAmbiguous(tx_reference, cause=e, attempts=attempts)
            confirmed = status

        if not confirmed:
            raise ChainSubmissionError(
                f"Transaction {tx_reference} reverted",
                attempts=attempts,
            )

    async def execute(
        self,
        wallet: Wallet,
        destination: str,
        amount: Decimal,
        max_attempts: Optional[int] = None,
        callbacks: Optional[TransferCallbacks] = None,
        gas_price: Optional[int] = None
    ) -> TransactionReceipt:
        """
        Move amount from wallet to destination

        Args:
            wallet: Source wallet (signs the transaction)
            destination: Destination address
            amount: Amount in native units
            max_attempts: Attempt cap (executor default if omitted)
            callbacks: Optional lifecycle callbacks
            gas_price: Gas price (wei) to sign with; the chain's current price if omitted

        Returns:
            TransactionReceipt of the confirmed transaction

        Raises:
            ChainSubmissionError: non-retryable rejection or reverted transaction
            ConfirmationAmbiguous: submitted but outcome unknown, or an earlier
                attempt is already in the mempool
            TransferError: retryable errors exhausted the attempt cap
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidAmount(f"Transfer amount must be positive, got {amount}")

        max_attempts = max_attempts or self.max_attempts
        callbacks = callbacks or TransferCallbacks()
        last_error: Optional[BaseException] = None

        nonce = await self._fetch_nonce(wallet.address)

        for attempt in range(1, max_attempts + 1):
            tx = TransferTx(
                wallet=wallet,
                to_address=destination,
                amount=amount,
                nonce=nonce,
                gas_price=gas_price,
            )

            try:
                await self.governor.wait()
                tx_reference = await self.chain.submit(tx)

            except Exception as e:
                # Already in the mempool: never resubmit under a fresh nonce
                if is_already_known(e):
                    logger.error(
                        f"✗ Transfer from {wallet.short_address} already in mempool (nonce {nonce}), "
                        f"not resubmitting: {e}"
                    )
                    raise ConfirmationAmbiguous(None, cause=e, attempts=attempt, nonce=nonce)

                retryable = classify_chain_error(e)
                if retryable is None:
                    logger.error(f"✗ Transfer from {wallet.short_address} failed (fatal): {e}")
                    raise ChainSubmissionError(str(e), cause=e, attempts=attempt)

                last_error = retryable
                logger.warning(
                    f"Transfer attempt {attempt}/{max_attempts} from {wallet.short_address} "
                    f"hit {retryable.code} (nonce {nonce}): {str(e)[:150]}"
                )

                if attempt == max_attempts:
                    break

                await asyncio.sleep(self.retry_delay)
                nonce = await self._fetch_nonce(wallet.address)
                continue

            logger.info(
                f"✓ Transfer submitted: {amount} to {destination[:10]}... "
                f"(nonce {nonce}, tx {tx_reference})"
            )
            await self._notify(callbacks.on_submitted, 'submitted', tx_reference)
            await self._notify(callbacks.on_awaiting_confirmation, 'awaiting_confirmation', tx_reference)

            await self._confirm(tx_reference, attempt)

            receipt = TransactionReceipt(
                tx_reference=tx_reference,
                from_address=wallet.address,
                to_address=destination,
                amount=amount,
                nonce=nonce,
                attempts=attempt,
            )
            logger.info(f"✓ Transfer confirmed: {tx_reference}")
            await self._notify(callbacks.on_confirmed, 'confirmed', receipt)
            return receipt

        logger.error(f"❌ Transfer from {wallet.short_address} failed after {max_attempts} attempts")
        raise TransferError(
            f"Transfer failed after {max_attempts} attempts: {last_error}",
            cause=last_error,
            attempts=max_attempts,
        )
