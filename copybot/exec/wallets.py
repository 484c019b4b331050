"""User-side wallets that sign swap transactions.

The service never stores keys. A wallet is supplied by whoever confirms a
trade: the API only returns quotes, while the monitor command runs on the
user's own machine with the user's own keypair.
"""

import json
import os
from pathlib import Path

import structlog
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from ..core.interfaces import Wallet

logger = structlog.get_logger(__name__)


class KeypairWallet(Wallet):
    """Wallet backed by a local solders keypair."""

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair
        logger.info("Keypair wallet loaded", pubkey=self.pubkey_base58())

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairWallet":
        """Load from a base58 secret key (Phantom export format)."""
        return cls(Keypair.from_base58_string(secret.strip()))

    @classmethod
    def from_json_file(cls, path: str) -> "KeypairWallet":
        """Load from a solana-keygen JSON file (array of 64 ints)."""
        secret = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(secret, list) or len(secret) != 64:
            raise ValueError(f"Invalid keypair file: {path}")
        return cls(Keypair.from_bytes(bytes(secret)))

    @classmethod
    def from_env(cls, env_var: str = "SOLANA_SK_B58") -> "KeypairWallet":
        """Load from a base58 secret held in an environment variable.

        Raises:
            ValueError: If the variable is not set
        """
        secret = os.environ.get(env_var)
        if not secret:
            raise ValueError(f"Environment variable {env_var} not set")
        return cls.from_base58(secret)

    @property
    def connected(self) -> bool:
        return True

    def pubkey_base58(self) -> str:
        return str(self.keypair.pubkey())

    async def sign_transaction(self, txn_bytes: bytes) -> bytes:
        """Sign a serialized versioned transaction.

        Args:
            txn_bytes: Unsigned transaction as returned by the swap API

        Returns:
            Fully signed transaction bytes ready for submission
        """
        unsigned = VersionedTransaction.from_bytes(txn_bytes)
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        return bytes(signed)


class DisconnectedWallet(Wallet):
    """Placeholder for a user whose wallet is not connected."""

    def __init__(self, address: str = "") -> None:
        self.address = address

    @property
    def connected(self) -> bool:
        return False

    def pubkey_base58(self) -> str:
        return self.address

    async def sign_transaction(self, txn_bytes: bytes) -> bytes:
        raise RuntimeError("Wallet not connected")


def transaction_signature(signed_bytes: bytes) -> str:
    """First signature of a signed transaction, as base58."""
    return str(VersionedTransaction.from_bytes(signed_bytes).signatures[0])
