"""
Custodial Wallets

Funding wallets are keyed by platform user id, claim wallets by lowercased
username. Keys are generated with eth_account.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from eth_account import Account
from web3 import Web3


@dataclass
class Wallet:
    """Custodial wallet"""
    identity: str
    address: str
    private_key: str = field(repr=False)
    created_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    @property
    def short_address(self) -> str:
        return f"{self.address[:10]}..."


@dataclass
class ClaimWallet(Wallet):
    """Wallet holding a recipient's tips until withdrawn"""
    from_identity: Optional[str] = None
    accrued_amount: Decimal = Decimal("0")


def generate_keypair():
    """Return (address, private_key_hex) for a fresh account"""
    account = Account.create()
    return account.address, Web3.to_hex(account.key)


def generate_wallet(identity: str) -> Wallet:
    address, private_key = generate_keypair()
    return Wallet(identity=identity, address=address, private_key=private_key)


def generate_claim_wallet(username_key: str, from_identity: Optional[str] = None) -> ClaimWallet:
    address, private_key = generate_keypair()
    return ClaimWallet(
        identity=username_key,
        address=address,
        private_key=private_key,
        from_identity=from_identity,
    )


def normalize_username(username: str) -> str:
    """'@Alice ' -> 'alice'"""
    if username is None:
        raise ValueError("Username is required")
    key = username.strip().lstrip('@').lower()
    if not key:
        raise ValueError("Username is empty")
    return key
