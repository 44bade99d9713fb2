"""
Settlement Orchestrator

Turns one tip into on-chain transfers and bookkeeping:
1. Precondition check (amount, sender balance) - no chain writes on failure
2. Resolve or create the recipient's claim wallet
3. Principal transfer to the claim wallet
4. Fee transfer to the protocol fee address (fresh nonce)
5. Append the tip record, then accrue the recipient's claim amount

A failed fee transfer never rolls back a delivered tip; it is reported on the
receipt and logged for reconciliation.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from loguru import logger

from .chain_client import ChainClient, TransferTx
from .claim_ledger import ClaimLedger
from .config import TipConfig
from .errors import InsufficientBalance, InvalidAmount, LedgerPersistError, TransferError
from .transaction_history import TipHistoryDB, TipRecord
from .transfer_engine import TransactionReceipt, TransferCallbacks, TransferExecutor
from .wallets import Wallet, normalize_username


@dataclass
class SettlementReceipt:
    """Result of a settled tip"""
    sender_identity: str
    recipient_key: str
    claim_address: str
    amount: Decimal
    fee_amount: Decimal
    principal: TransactionReceipt
    fee: Optional[TransactionReceipt] = None
    fee_error: Optional[TransferError] = None

    @property
    def tx_reference(self) -> str:
        return self.principal.tx_reference

    @property
    def fee_collected(self) -> bool:
        return self.fee is not None or self.fee_amount == 0

    def to_dict(self) -> Dict:
        return {
            'sender_identity': self.sender_identity,
            'recipient_key': self.recipient_key,
            'claim_address': self.claim_address,
            'amount': str(self.amount),
            'fee_amount': str(self.fee_amount),
            'tx_reference': self.tx_reference,
            'fee_tx_reference': self.fee.tx_reference if self.fee else None,
            'fee_collected': self.fee_collected,
            'fee_error': str(self.fee_error) if self.fee_error else None,
        }


def parse_amount(value) -> Decimal:
    """Parse a user-supplied amount; rejects non-positive and non-finite values"""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, AttributeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive number, got {value!r}")
    return amount


class SettlementOrchestrator:
    """
    Composes principal + fee transfers into one logical tip

    Within one settlement the principal transfer is fully confirmed before the
    fee transfer's nonce is fetched.
    """

    def __init__(
        self,
        chain: ChainClient,
        executor: TransferExecutor,
        ledger: ClaimLedger,
        history: TipHistoryDB,
        config: TipConfig
    ):
        self.chain = chain
        self.executor = executor
        self.ledger = ledger
        self.history = history
        self.config = config

        logger.info("Settlement orchestrator initialized")
        logger.info(f"  Fee rate: {config.fee_rate} -> {config.fee_address[:10]}...")
        logger.info(f"  Network fee buffer: {config.network_fee_buffer}")

    def fee_for(self, amount: Decimal) -> Decimal:
        return amount * self.config.fee_rate

    def required_balance(self, amount: Decimal) -> Decimal:
        """amount + fee + network fee buffer"""
        return amount + self.fee_for(amount) + self.config.network_fee_buffer

    async def get_balance(self, address: str) -> Decimal:
        """
        On-chain balance

        Raises:
            TransferError: the chain could not be read
        """
        await self.executor.governor.wait()
        try:
            return await self.chain.get_balance(address)
        except Exception as e:
            logger.error(f"✗ Could not read balance of {address[:10]}...: {e}")
            raise TransferError(f"Could not read balance: {e}", cause=e)

    async def check_balance(self, wallet: Wallet, amount: Decimal) -> Decimal:
        """
        Verify the sender can cover the tip

        Returns:
            Current on-chain balance

        Raises:
            InsufficientBalance: balance below amount + fee + buffer
        """
        required = self.required_balance(amount)
        balance = await self.get_balance(wallet.address)
        if balance < required:
            logger.info(f"Insufficient balance for {wallet.identity}: required {required}, have {balance}")
            raise InsufficientBalance(required=required, available=balance)
        return balance

    async def settle(
        self,
        sender_wallet: Wallet,
        recipient_key: str,
        amount,
        callbacks: Optional[TransferCallbacks] = None
    ) -> SettlementReceipt:
        """
        Settle a tip

        Args:
            sender_wallet: Sender's funding wallet
            recipient_key: Recipient username
            amount: Tip amount
            callbacks: Optional lifecycle callbacks for the principal transfer

        Returns:
            SettlementReceipt (check fee_error for uncollected fees)

        Raises:
            InvalidAmount, InsufficientBalance: before any chain write
            TransferError: balance read or principal transfer failed
            LedgerPersistError: principal moved but bookkeeping failed
        """
        amount = parse_amount(amount)
        recipient_key = normalize_username(recipient_key)
        fee_amount = self.fee_for(amount)

        logger.info(f"Starting settlement: {sender_wallet.identity} -> @{recipient_key}")
        logger.info(f"  Amount: {amount}, fee: {fee_amount}")

        # Step 1: Preconditions
        await self.check_balance(sender_wallet, amount)

        # Step 2: Claim wallet (persisted before any funds move)
        claim_wallet = await self.ledger.get_or_create(recipient_key, from_identity=sender_wallet.identity)

        # Step 3: Principal transfer
        principal = await self.executor.execute(
            sender_wallet,
            claim_wallet.address,
            amount,
            callbacks=callbacks,
        )

        # Step 4: Fee transfer (executor fetches its own nonce)
        fee_receipt = None
        fee_error = None
        if fee_amount > 0:
            try:
                fee_receipt = await self.executor.execute(
                    sender_wallet,
                    self.config.fee_address,
                    fee_amount,
                )
            except TransferError as e:
                fee_error = e
                logger.error(
                    f"✗ Fee transfer failed after tip {principal.tx_reference}: "
                    f"{fee_amount} uncollected from {sender_wallet.identity}: {e}"
                )
                self.history.record_error(
                    principal.tx_reference,
                    'uncollected_fee',
                    f"{fee_amount} from {sender_wallet.identity}: {e}",
                )

        receipt = SettlementReceipt(
            sender_identity=sender_wallet.identity,
            recipient_key=recipient_key,
            claim_address=claim_wallet.address,
            amount=amount,
            fee_amount=fee_amount,
            principal=principal,
            fee=fee_receipt,
            fee_error=fee_error,
        )

        # Step 5: Bookkeeping
        await self._record(receipt)

        logger.info(f"✅ Settlement complete: {principal.tx_reference}")
        return receipt

    async def _record(self, receipt: SettlementReceipt):
        """
        Write the tip record, then accrue the recipient's claim

        The tip record is written for every delivered principal, whatever
        happens to the accrual.
        """
        record = TipRecord(
            from_identity=receipt.sender_identity,
            to_username=receipt.recipient_key,
            amount=receipt.amount,
            fee_amount=receipt.fee_amount,
            tx_reference=receipt.tx_reference,
            fee_tx_reference=receipt.fee.tx_reference if receipt.fee else None,
            fee_collected=receipt.fee_collected,
        )
        recorded = self.history.record_tip(record)
        if not recorded:
            logger.critical(f"Tip {receipt.tx_reference} delivered but tip record not written, reconcile manually")
            self.history.record_error(receipt.tx_reference, 'tip_record', f"Could not write tip record: {record.to_dict()}")

        try:
            await self.ledger.accrue(receipt.recipient_key, receipt.amount, from_identity=receipt.sender_identity)
        except LedgerPersistError as e:
            logger.critical(
                f"Tip {receipt.tx_reference} delivered but accrual for @{receipt.recipient_key} "
                f"not persisted, reconcile manually"
            )
            self.history.record_error(receipt.tx_reference, 'ledger_persist', str(e))
            raise LedgerPersistError(str(e), tx_reference=receipt.tx_reference, receipt=receipt)

        if not recorded:
            raise LedgerPersistError(
                f"Could not write tip record for {receipt.tx_reference}",
                tx_reference=receipt.tx_reference,
                receipt=receipt,
            )

    async def sweep(
        self,
        wallet: Wallet,
        destination: str,
        callbacks: Optional[TransferCallbacks] = None
    ) -> TransactionReceipt:
        """
        Move a wallet's whole on-chain balance, less network costs

        The gas price read for the estimate is the one the transfer is signed
        with, so the reserve always covers the actual network fee.

        Args:
            wallet: Source wallet
            destination: Destination address

        Returns:
            TransactionReceipt

        Raises:
            InsufficientBalance: balance does not exceed network costs
            TransferError: the chain could not be read, or the transfer failed
        """
        balance = await self.get_balance(wallet.address)

        await self.executor.governor.wait()
        try:
            gas_price = await self.chain.get_gas_price()
            estimated = await self.chain.estimate_fee(
                TransferTx(wallet=wallet, to_address=destination, amount=balance, gas_price=gas_price)
            )
        except Exception as e:
            logger.error(f"✗ Could not estimate network fee for {wallet.short_address}: {e}")
            raise TransferError(f"Could not estimate network fee: {e}", cause=e)

        reserve = max(self.config.network_fee_buffer, estimated)

        if balance <= reserve:
            raise InsufficientBalance(required=reserve, available=balance)

        amount = balance - reserve
        logger.info(f"Sweeping {amount} from {wallet.short_address} to {destination[:10]}...")
        return await self.executor.execute(wallet, destination, amount, callbacks=callbacks, gas_price=gas_price)
