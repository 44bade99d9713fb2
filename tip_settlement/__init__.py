"""
Tip Settlement Engine

Custodial tipping: turns "tip user X amount Y" into confirmed on-chain
transfers and tracks funds not yet claimed by recipients.

Components:
- transfer_engine: Single transfer with rate governor, nonce refresh and retry
- settlement: Principal + fee transfers and bookkeeping for one tip
- claim_ledger: Per-recipient claim wallets and accrued amounts
- giveaway: Time-boxed chat giveaways and random drops
- wallet_store: SQLite wallet persistence
- transaction_history: Append-only tip records
- chain_client: Chain capability interface and web3 implementation
- tip_service: Integration with the chat dispatch layer
"""

from .chain_client import (
    ChainClient,
    TransferTx,
    Web3ChainClient,
)
from .claim_ledger import (
    ClaimLedger,
)
from .config import (
    TipConfig,
    load_config,
    setup_logging,
)
from .errors import (
    ChainSubmissionError,
    ConfirmationAmbiguous,
    GiveawayError,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    LedgerPersistError,
    NonceConflict,
    RateLimited,
    SettlementError,
    TransferError,
    WalletNotFound,
)
from .giveaway import (
    Giveaway,
    GiveawayManager,
    GiveawayOutcome,
    GiveawayState,
)
from .settlement import (
    SettlementOrchestrator,
    SettlementReceipt,
)
from .tip_service import (
    TipService,
)
from .transaction_history import (
    TipHistoryDB,
    TipRecord,
)
from .transfer_engine import (
    RateGovernor,
    TransactionReceipt,
    TransferCallbacks,
    TransferExecutor,
)
from .wallet_store import (
    FundingWalletRegistry,
    SQLiteWalletStore,
    WalletStore,
)
from .wallets import (
    ClaimWallet,
    Wallet,
)

__all__ = [
    # Settlement
    'TransferExecutor',
    'TransferCallbacks',
    'TransactionReceipt',
    'RateGovernor',
    'SettlementOrchestrator',
    'SettlementReceipt',

    # Claims
    'ClaimLedger',
    'ClaimWallet',
    'Wallet',

    # Giveaways
    'GiveawayManager',
    'Giveaway',
    'GiveawayOutcome',
    'GiveawayState',

    # Chain
    'ChainClient',
    'TransferTx',
    'Web3ChainClient',

    # Storage
    'WalletStore',
    'SQLiteWalletStore',
    'FundingWalletRegistry',
    'TipHistoryDB',
    'TipRecord',

    # Integration
    'TipService',

    # Configuration
    'TipConfig',
    'load_config',
    'setup_logging',

    # Errors
    'SettlementError',
    'InvalidAmount',
    'InvalidAddress',
    'InsufficientBalance',
    'NonceConflict',
    'RateLimited',
    'TransferError',
    'ChainSubmissionError',
    'ConfirmationAmbiguous',
    'LedgerPersistError',
    'WalletNotFound',
    'GiveawayError',
]

__version__ = '1.0.0'
