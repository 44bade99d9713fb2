"""
Settlement Errors

Error taxonomy for tip settlement:
- InsufficientBalance: precondition failed, no chain call made
- NonceConflict / RateLimited: retried internally up to the attempt cap
- ChainSubmissionError: any other chain rejection, never retried
- ConfirmationAmbiguous: submitted, but confirmation could not be established
- LedgerPersistError: funds moved but bookkeeping failed to persist
"""

from decimal import Decimal
from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors"""
    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAmount(SettlementError):
    code = "INVALID_AMOUNT"


class InvalidAddress(SettlementError):
    code = "INVALID_ADDRESS"


class WalletNotFound(SettlementError):
    code = "WALLET_NOT_FOUND"


class GiveawayError(SettlementError):
    code = "GIVEAWAY_ERROR"


class InsufficientBalance(SettlementError):
    """Sender cannot cover amount + fee + network buffer"""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: required {required}, available {available}"
        )


class RetryableChainError(SettlementError):
    """Transient chain rejection, safe to retry with a refreshed nonce"""
    code = "RETRYABLE_CHAIN_ERROR"


class NonceConflict(RetryableChainError):
    code = "NONCE_CONFLICT"


class RateLimited(RetryableChainError):
    code = "RATE_LIMITED"


class TransferError(SettlementError):
    """A single value transfer could not be completed"""
    code = "TRANSFER_FAILED"

    def __init__(self, message: str, cause: Optional[BaseException] = None, attempts: int = 0):
        self.cause = cause
        self.attempts = attempts
        super().__init__(message)


class ChainSubmissionError(TransferError):
    code = "CHAIN_SUBMISSION_ERROR"


class ConfirmationAmbiguous(TransferError):
    """
    Submission succeeded but confirmation could not be established.

    The transaction may still land. Never resubmit on this error.
    """
    code = "CONFIRMATION_AMBIGUOUS"

    def __init__(
        self,
        tx_reference: Optional[str],
        cause: Optional[BaseException] = None,
        attempts: int = 0,
        nonce: Optional[int] = None
    ):
        self.tx_reference = tx_reference
        self.nonce = nonce
        subject = tx_reference if tx_reference else f"nonce {nonce}"
        super().__init__(
            f"Confirmation ambiguous for {subject}",
            cause=cause,
            attempts=attempts,
        )


class LedgerPersistError(SettlementError):
    """Chain transfer succeeded but the bookkeeping write failed"""
    code = "LEDGER_PERSIST_ERROR"

    def __init__(self, message: str, tx_reference: Optional[str] = None, receipt=None):
        self.tx_reference = tx_reference
        self.receipt = receipt
        super().__init__(message)


# Substrings seen in RPC error messages (geth, reth, monad, public providers)
NONCE_ERROR_MARKERS = (
    "nonce too low",
    "nonce too high",
    "invalid nonce",
    "nonce has already been used",
    "replacement transaction underpriced",
)

# The same signed transaction is already in the mempool
ALREADY_KNOWN_MARKERS = (
    "already known",
    "known transaction",
    "already imported",
)

FEE_ERROR_MARKERS = (
    "transaction underpriced",
    "fee too low",
    "max fee per gas less than block base fee",
    "maxfeepergas",
    "max priority fee",
)

RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "429",
    "request limit",
)


def is_already_known(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in ALREADY_KNOWN_MARKERS)


def classify_chain_error(exc: BaseException) -> Optional[RetryableChainError]:
    """
    Map a raw chain exception to a retryable error

    Args:
        exc: Exception raised by a ChainClient call

    Returns:
        NonceConflict or RateLimited when the error is transient, None when fatal
    """
    if isinstance(exc, RetryableChainError):
        return exc

    message = str(exc).lower()

    if any(marker in message for marker in NONCE_ERROR_MARKERS):
        return NonceConflict(str(exc))

    # Priority/fee problems are resolved the same way as nonce conflicts
    if any(marker in message for marker in FEE_ERROR_MARKERS):
        return NonceConflict(str(exc))

    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return RateLimited(str(exc))

    return None
