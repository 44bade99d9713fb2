"""
Tip Service

Entry point for the chat dispatch layer: wires the wallet store, claim ledger,
settlement orchestrator and giveaways together and exposes one method per
user-facing operation (/start, /balance, /tip, /claim, withdrawals, stats).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

from loguru import logger

from .chain_client import ChainClient, Web3ChainClient
from .claim_ledger import ClaimLedger
from .config import TipConfig
from .errors import InvalidAddress, WalletNotFound
from .giveaway import GiveawayManager
from .settlement import SettlementOrchestrator, SettlementReceipt
from .transaction_history import TipHistoryDB
from .transfer_engine import TransactionReceipt, TransferCallbacks, TransferExecutor
from .wallet_store import FundingWalletRegistry, SQLiteWalletStore, WalletStore
from .wallets import ClaimWallet, Wallet, normalize_username


WITHDRAW_CLAIM = 'claim'
WITHDRAW_FUNDING = 'funding'


@dataclass
class PendingWithdrawal:
    """User is expected to send a destination address next"""
    user_key: str
    kind: str  # 'claim' or 'funding'
    username: Optional[str] = None


@dataclass
class WithdrawalResult:
    kind: str
    destination: str
    receipt: TransactionReceipt
    drained: Decimal = Decimal("0")


class TipService:
    """
    Custodial tip service

    Usage:
        service = TipService.from_config(load_config())
        wallet = await service.start(user_id)
        receipt = await service.tip(user_id, "@alice", "1.5")
    """

    def __init__(
        self,
        chain: ChainClient,
        store: WalletStore,
        history: TipHistoryDB,
        config: TipConfig,
        executor: Optional[TransferExecutor] = None,
        giveaway_notifier: Optional[Callable] = None
    ):
        self.chain = chain
        self.store = store
        self.history = history
        self.config = config

        self.funding_wallets = FundingWalletRegistry(store)
        self.ledger = ClaimLedger(store)
        self.executor = executor or TransferExecutor.from_config(chain, config)
        self.orchestrator = SettlementOrchestrator(chain, self.executor, self.ledger, history, config)
        self.giveaways = GiveawayManager(self.orchestrator, config, notifier=giveaway_notifier)

        self._withdrawals: Dict[str, PendingWithdrawal] = {}

        logger.info("Tip service initialized")

    @classmethod
    def from_config(cls, config: TipConfig, giveaway_notifier: Optional[Callable] = None) -> 'TipService':
        chain = Web3ChainClient(config.rpc_url, config.chain_id, config.confirmation_timeout_seconds)
        store = SQLiteWalletStore(config.db_path)
        history = TipHistoryDB(config.db_path)
        return cls(chain, store, history, config, giveaway_notifier=giveaway_notifier)

    # ----------------------------------------------------------
    # WALLETS
    # ----------------------------------------------------------

    async def start(self, user_key) -> Wallet:
        """Create (or return) the user's funding wallet"""
        return await self.funding_wallets.get_or_create(str(user_key))

    def _require_funding_wallet(self, user_key) -> Wallet:
        wallet = self.funding_wallets.get(str(user_key))
        if wallet is None:
            raise WalletNotFound("You don't have a wallet yet. Use /start to create one.")
        return wallet

    def _require_claim_wallet(self, username: str) -> ClaimWallet:
        wallet = self.ledger.get(username)
        if wallet is None:
            raise WalletNotFound("No tips to claim yet.")
        return wallet

    async def balances(self, user_key, username: Optional[str] = None) -> Dict[str, Optional[Decimal]]:
        """
        On-chain balances of the user's wallets

        Returns:
            {'funding': Decimal or None, 'claim': Decimal or None}
        """
        result = {'funding': None, 'claim': None}

        funding = self.funding_wallets.get(str(user_key))
        if funding:
            result['funding'] = await self.orchestrator.get_balance(funding.address)

        if username:
            claim = self.ledger.get(username)
            if claim:
                result['claim'] = await self.orchestrator.get_balance(claim.address)

        return result

    async def claim_info(self, username: str) -> Dict:
        claim = self._require_claim_wallet(username)
        balance = await self.orchestrator.get_balance(claim.address)
        return {
            'username': claim.identity,
            'address': claim.address,
            'balance': balance,
            'accrued': claim.accrued_amount,
        }

    # ----------------------------------------------------------
    # TIPS
    # ----------------------------------------------------------

    async def tip(
        self,
        user_key,
        recipient_username: str,
        amount,
        callbacks: Optional[TransferCallbacks] = None
    ) -> SettlementReceipt:
        sender = self._require_funding_wallet(user_key)
        return await self.orchestrator.settle(sender, recipient_username, amount, callbacks=callbacks)

    async def start_giveaway(self, chat_id, user_key, amount):
        sender = self._require_funding_wallet(user_key)
        return await self.giveaways.start(chat_id, sender, amount)

    async def random_drop(self, chat_id, user_key, pool, winners: int, amount):
        sender = self._require_funding_wallet(user_key)
        return await self.giveaways.random_drop(chat_id, sender, pool, winners, amount)

    def handle_chat_message(self, chat_id, username: Optional[str], text: Optional[str]) -> bool:
        if not username:
            return False
        return self.giveaways.handle_message(chat_id, username, text)

    # ----------------------------------------------------------
    # WITHDRAWALS
    # ----------------------------------------------------------

    def begin_withdrawal(self, user_key, kind: str, username: Optional[str] = None) -> PendingWithdrawal:
        """
        Expect a destination address from this user next

        A new request replaces any stale one for the same user.
        """
        user_key = str(user_key)
        if kind == WITHDRAW_CLAIM:
            username = normalize_username(username)
            self._require_claim_wallet(username)
        elif kind == WITHDRAW_FUNDING:
            self._require_funding_wallet(user_key)
        else:
            raise ValueError(f"Unknown withdrawal kind: {kind}")

        pending = PendingWithdrawal(user_key=user_key, kind=kind, username=username)
        self._withdrawals[user_key] = pending
        logger.debug(f"Withdrawal pending for {user_key} ({kind})")
        return pending

    def pending_withdrawal(self, user_key) -> Optional[PendingWithdrawal]:
        return self._withdrawals.get(str(user_key))

    def cancel_withdrawal(self, user_key) -> bool:
        return self._withdrawals.pop(str(user_key), None) is not None

    async def submit_withdrawal_address(self, user_key, address: str) -> Optional[WithdrawalResult]:
        """
        Complete a pending withdrawal to the given address

        Returns:
            WithdrawalResult, or None when no withdrawal is pending

        Raises:
            InvalidAddress: address rejected; the withdrawal stays pending
        """
        user_key = str(user_key)
        pending = self._withdrawals.get(user_key)
        if pending is None:
            return None

        address = (address or '').strip()
        if not self.chain.is_valid_address(address):
            raise InvalidAddress("Invalid address. Please enter a valid address.")

        # Cleared whether the transfer succeeds or fails
        del self._withdrawals[user_key]

        if pending.kind == WITHDRAW_CLAIM:
            claim = self._require_claim_wallet(pending.username)
            receipt = await self.orchestrator.sweep(claim, address)
            drained = await self.ledger.drain(pending.username)
        else:
            funding = self._require_funding_wallet(user_key)
            receipt = await self.orchestrator.sweep(funding, address)
            drained = Decimal("0")

        logger.info(f"✅ Withdrawal ({pending.kind}) for {user_key}: {receipt.amount} -> {address[:10]}...")
        return WithdrawalResult(kind=pending.kind, destination=address, receipt=receipt, drained=drained)

    async def transfer_all_to_funding(self, user_key, username: str) -> WithdrawalResult:
        """Sweep the claim wallet into the user's funding wallet (creating it if needed)"""
        claim = self._require_claim_wallet(username)
        funding = await self.start(user_key)

        receipt = await self.orchestrator.sweep(claim, funding.address)
        drained = await self.ledger.drain(claim.identity)
        return WithdrawalResult(kind=WITHDRAW_CLAIM, destination=funding.address, receipt=receipt, drained=drained)

    # ----------------------------------------------------------
    # STATS
    # ----------------------------------------------------------

    def stats(self) -> Dict:
        history = self.history.get_statistics()
        return {
            'total_users': self.store.count_funding_wallets(),
            'claim_wallets': len(self.ledger),
            **history,
        }

    async def close(self):
        await self.giveaways.shutdown()
        await self.chain.close()
        self.store.close()
        self.history.close()
        logger.info("Tip service closed")
