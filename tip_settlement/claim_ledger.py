"""
Claim Ledger

Per-recipient claim wallets and their accrued (unclaimed) amount.

The accrual is a notification figure, not a balance: how much can actually
move is always read from the chain.
"""

import asyncio
from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger

from .errors import InvalidAmount, LedgerPersistError, WalletNotFound
from .wallet_store import WalletStore
from .wallets import ClaimWallet, generate_claim_wallet, normalize_username


class ClaimLedger:
    """
    Claim wallets keyed by lowercased username

    Every mutation for a key runs under that key's lock and is persisted
    before the lock is released.
    """

    def __init__(self, store: WalletStore):
        """
        Initialize ledger from the store

        Args:
            store: Wallet store (claim wallets are bulk-loaded here)
        """
        self.store = store
        self._wallets: Dict[str, ClaimWallet] = store.load_claim_wallets()
        self._locks: Dict[str, asyncio.Lock] = {}
        logger.info(f"Claim ledger loaded {len(self._wallets)} claim wallets")

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _persist(self, key: str, wallet: ClaimWallet, action: str):
        if not self.store.upsert_claim_wallet(key, wallet):
            logger.critical(f"Claim wallet for @{key} not persisted after {action}")
            raise LedgerPersistError(f"Could not persist claim wallet for @{key} ({action})")

    def get(self, username: str) -> Optional[ClaimWallet]:
        return self._wallets.get(normalize_username(username))

    def all_wallets(self) -> List[ClaimWallet]:
        return list(self._wallets.values())

    async def get_or_create(self, username: str, from_identity: Optional[str] = None) -> ClaimWallet:
        """
        Resolve the claim wallet for a username, generating it if absent

        Args:
            username: Recipient username (any case, optional leading @)
            from_identity: Identity of the first tipper, stored on creation

        Returns:
            ClaimWallet (same instance on every call for the same key)
        """
        key = normalize_username(username)
        wallet = self._wallets.get(key)
        if wallet:
            return wallet

        async with self._lock_for(key):
            wallet = self._wallets.get(key)
            if wallet:
                return wallet

            wallet = generate_claim_wallet(key, from_identity=from_identity)
            self._persist(key, wallet, 'create')
            self._wallets[key] = wallet
            logger.info(f"✓ Created claim wallet for @{key}: {wallet.short_address}")
            return wallet

    async def accrue(self, username: str, delta: Decimal, from_identity: Optional[str] = None) -> Decimal:
        """
        Add delta to the accrued amount

        Args:
            username: Recipient username
            delta: Positive amount to add
            from_identity: Latest tipper

        Returns:
            New accrued amount
        """
        delta = Decimal(delta)
        if delta <= 0:
            raise InvalidAmount(f"Accrual delta must be positive, got {delta}")

        key = normalize_username(username)
        async with self._lock_for(key):
            wallet = self._wallets.get(key)
            if wallet is None:
                raise WalletNotFound(f"No claim wallet for @{key}")

            previous = wallet.accrued_amount
            previous_from = wallet.from_identity
            wallet.accrued_amount = previous + delta
            if from_identity is not None:
                wallet.from_identity = from_identity

            try:
                self._persist(key, wallet, 'accrue')
            except LedgerPersistError:
                wallet.accrued_amount = previous
                wallet.from_identity = previous_from
                raise

            logger.debug(f"@{key} accrued {delta} (total {wallet.accrued_amount})")
            return wallet.accrued_amount

    async def drain(self, username: str) -> Decimal:
        """
        Reset the accrued amount to zero

        Concurrent drains for the same key are serialized, so at most one of
        them observes a nonzero amount.

        Args:
            username: Recipient username

        Returns:
            Accrued amount before the drain
        """
        key = normalize_username(username)
        async with self._lock_for(key):
            wallet = self._wallets.get(key)
            if wallet is None:
                raise WalletNotFound(f"No claim wallet for @{key}")

            previous = wallet.accrued_amount
            if previous == 0:
                return previous

            wallet.accrued_amount = Decimal("0")
            try:
                self._persist(key, wallet, 'drain')
            except LedgerPersistError:
                wallet.accrued_amount = previous
                raise

            logger.info(f"✓ Drained @{key} claim accrual ({previous})")
            return previous

    def __len__(self):
        return len(self._wallets)
