"""
Key Manager - AES-256-GCM encryption for custodial private keys at rest.

Each end user has one EVM signing key. The key is stored by the user-record
collaborator as an encrypted blob and only decrypted in memory for the
duration of a single operation.

Storage Format:
    hex(nonce) ":" hex(auth_tag) ":" hex(ciphertext)

    nonce is 16 random bytes, auth_tag is the 16-byte GCM tag. The
    encryption key is derived from the deployment passphrase with scrypt
    (N=2^14, r=8, p=1, fixed salt), so existing blobs stay readable for as
    long as the passphrase does not change.

Usage:
    vault = KeyVault(config.encryption_key)

    identity = create_identity(vault)          # new user
    account = vault.account(identity)          # LocalAccount for signing
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import DecryptionFailure

logger = logging.getLogger(__name__)

# AES-256-GCM parameters
KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 16  # 128 bits
TAG_SIZE = 16  # 128 bits authentication tag

# scrypt parameters; changing any of these makes stored blobs unreadable
KDF_SALT = b"salt"
KDF_N = 2 ** 14
KDF_R = 8
KDF_P = 1

BLOB_DELIMITER = ":"
MIN_PASSPHRASE_LENGTH = 32


@dataclass(frozen=True)
class SigningIdentity:
    """
    Handle to an encrypted private key, owned by the user-record store.

    The engine never persists it; it only unlocks it for one operation.
    """

    encrypted_key: str
    address: Optional[str] = None

    def __repr__(self) -> str:
        return f"SigningIdentity(address={self.address!r})"


class KeyVault:
    """
    Encrypts and decrypts private keys with a passphrase fixed per deployment.

    The derived AES key is recomputed on every call and never kept on the
    instance, so it is only resident while an encrypt/decrypt is running.
    """

    def __init__(self, passphrase: str):
        """
        Args:
            passphrase: Deployment secret (ENCRYPTION_KEY)

        Raises:
            ValueError: If the passphrase is missing or too short
        """
        if not passphrase:
            raise ValueError(
                "ENCRYPTION_KEY is required. Set it in your .env file or environment."
            )
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"ENCRYPTION_KEY must be at least {MIN_PASSPHRASE_LENGTH} characters. "
                "Use a strong, random secret."
            )
        self._passphrase = passphrase.encode("utf-8")

    def _derive_key(self) -> bytes:
        kdf = Scrypt(salt=KDF_SALT, length=KEY_SIZE, n=KDF_N, r=KDF_R, p=KDF_P)
        return kdf.derive(self._passphrase)

    def encrypt(self, plain_key: str) -> str:
        """
        Encrypt a private key for storage.

        Args:
            plain_key: Hex private key, usually 0x-prefixed

        Returns:
            Blob in nonce:tag:ciphertext hex format
        """
        if not plain_key:
            raise ValueError("Cannot encrypt empty key")

        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(self._derive_key()).encrypt(nonce, plain_key.encode("utf-8"), None)

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        return BLOB_DELIMITER.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a stored private key.

        Raises:
            DecryptionFailure: If the blob is malformed or the tag does not verify.
                No plaintext is ever returned in that case.
        """
        nonce, tag, ciphertext = self._split_blob(blob)

        try:
            plain = AESGCM(self._derive_key()).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            logger.error("Key decryption failed: authentication tag mismatch")
            raise DecryptionFailure(
                "Failed to decrypt key. Possible causes: wrong passphrase, corrupted data."
            ) from None

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailure("Decrypted key is not valid text") from None

    def account(self, identity: SigningIdentity) -> LocalAccount:
        """Unlock an identity into a signer."""
        private_key = self.decrypt(identity.encrypted_key)
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise DecryptionFailure(f"Decrypted data is not a valid private key: {e}") from None

        if identity.address and identity.address.lower() != account.address.lower():
            raise DecryptionFailure(
                f"Key does not match recorded address {identity.address}"
            )
        return account

    @staticmethod
    def _split_blob(blob: str) -> Tuple[bytes, bytes, bytes]:
        if not blob:
            raise DecryptionFailure("Cannot decrypt empty data")

        parts = blob.split(BLOB_DELIMITER)
        if len(parts) != 3:
            raise DecryptionFailure(
                f"Encrypted key must have 3 segments (nonce:tag:ciphertext), got {len(parts)}"
            )

        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError:
            raise DecryptionFailure("Encrypted key contains non-hex data") from None

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE or not ciphertext:
            raise DecryptionFailure("Encrypted key segments have unexpected lengths")

        return nonce, tag, ciphertext


def generate_wallet() -> Tuple[str, str]:
    """
    Generate a new EVM key.

    Returns:
        Tuple of (checksum_address, 0x-prefixed private key hex)
    """
    account = Account.create()
    logger.info(f"Generated new wallet: {account.address[:10]}...")
    return account.address, private_key_hex(account)


def create_identity(vault: KeyVault) -> SigningIdentity:
    """Generate a key and return it already encrypted."""
    address, private_key = generate_wallet()
    return SigningIdentity(encrypted_key=vault.encrypt(private_key), address=address)


def private_key_hex(account: LocalAccount) -> str:
    """0x-prefixed key for SDKs that take the raw key instead of a signer."""
    return "0x" + bytes(account.key).hex()
