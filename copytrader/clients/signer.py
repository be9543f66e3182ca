"""
Trading wallet keypair and versioned-transaction signing
"""

import base64

import base58
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from copytrader.core.logger import get_logger


logger = get_logger(__name__)


class TransactionSigner:
    """Holds the trading keypair and signs unsigned transactions built by APIs"""

    def __init__(self, private_key_base58: str):
        """
        Args:
            private_key_base58: Base58 encoded 64-byte secret key

        Raises:
            ValueError: If the key cannot be decoded
        """
        try:
            self.keypair = Keypair.from_bytes(base58.b58decode(private_key_base58))
        except Exception as e:
            raise ValueError(f"Invalid wallet private key: {e}") from e

        logger.info("wallet_loaded", pubkey=f"{self.pubkey[:8]}...")

    @property
    def pubkey(self) -> str:
        return str(self.keypair.pubkey())

    def sign_base64(self, transaction_b64: str) -> str:
        """Sign a base64 serialized VersionedTransaction and return it re-encoded"""
        tx = VersionedTransaction.from_bytes(base64.b64decode(transaction_b64))
        signed_tx = VersionedTransaction(tx.message, [self.keypair])
        return base64.b64encode(bytes(signed_tx)).decode("utf-8")
