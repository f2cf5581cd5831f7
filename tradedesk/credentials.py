"""Credential Cache - Polymarket API credentials derived from each user's key."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from eth_account.signers.local import LocalAccount
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds

from .errors import CredentialDerivationFailed
from .key_manager import KeyVault, SigningIdentity, private_key_hex

logger = logging.getLogger(__name__)

# Polymarket signature type for a plain EOA (no proxy wallet)
EOA_SIGNATURE_TYPE = 0


@dataclass(frozen=True)
class VenueCredential:
    """L2 API credentials issued by the CLOB for one address."""

    key: str
    secret: str
    passphrase: str

    @classmethod
    def from_api_creds(cls, creds: ApiCreds) -> "VenueCredential":
        return cls(key=creds.api_key, secret=creds.api_secret, passphrase=creds.api_passphrase)

    def to_api_creds(self) -> ApiCreds:
        return ApiCreds(api_key=self.key, api_secret=self.secret, api_passphrase=self.passphrase)

    def __repr__(self) -> str:
        return f"VenueCredential(key={self.key[:8]}...)"


class CredentialDeriver(Protocol):
    """Venue auth endpoint."""
    async def derive(self, account: LocalAccount) -> VenueCredential: ...


class ClobCredentialDeriver:
    """
    Derives credentials with an L1-only (signature authenticated) CLOB client.

    create_or_derive is idempotent: a returning address gets the same
    credentials back, so re-deriving after a restart is safe.
    """

    def __init__(self, host: str, chain_id: int = 137):
        self.host = host
        self.chain_id = chain_id

    async def derive(self, account: LocalAccount) -> VenueCredential:
        private_key = private_key_hex(account)

        def _derive() -> Optional[ApiCreds]:
            client = ClobClient(
                self.host,
                chain_id=self.chain_id,
                key=private_key,
                signature_type=EOA_SIGNATURE_TYPE,
            )
            return client.create_or_derive_api_creds()

        loop = asyncio.get_running_loop()
        creds = await loop.run_in_executor(None, _derive)
        if creds is None:
            raise CredentialDerivationFailed(
                f"CLOB returned no API credentials for {account.address}"
            )
        return VenueCredential.from_api_creds(creds)


class CredentialCache:
    """
    In-memory map from address to venue credentials, with single-flight derivation.

    Concurrent callers for the same address during a miss share one
    derivation request. Failures are not cached, so the next call retries.
    Entries are never persisted; a restart re-derives.
    """

    def __init__(self, deriver: CredentialDeriver, vault: KeyVault = None):
        """
        Args:
            deriver: Venue auth collaborator
            vault: Needed only for get_or_derive(identity)
        """
        self._deriver = deriver
        self._vault = vault
        self._credentials: Dict[str, VenueCredential] = {}
        self._in_flight: Dict[str, "asyncio.Task[VenueCredential]"] = {}

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._credentials

    async def get_or_derive(self, identity: SigningIdentity) -> VenueCredential:
        """Unlock an identity and return its credentials."""
        if self._vault is None:
            raise RuntimeError("CredentialCache was built without a KeyVault")
        return await self.get_for_account(self._vault.account(identity))

    async def get_for_account(self, account: LocalAccount) -> VenueCredential:
        """
        Return cached credentials or derive them once.

        Raises:
            CredentialDerivationFailed: If the venue rejects the derivation
        """
        address = account.address.lower()

        cached = self._credentials.get(address)
        if cached is not None:
            return cached

        task = self._in_flight.get(address)
        if task is None:
            task = asyncio.ensure_future(self._derive(address, account))
            self._in_flight[address] = task
        else:
            logger.debug(f"Joining in-flight credential derivation for {address[:10]}...")

        # One caller being cancelled must not cancel the shared derivation
        return await asyncio.shield(task)

    def invalidate(self, address: str) -> None:
        """Drop cached credentials, e.g. after the venue revoked them."""
        self._credentials.pop(address.lower(), None)

    async def _derive(self, address: str, account: LocalAccount) -> VenueCredential:
        logger.info(f"Deriving CLOB API credentials for {address[:10]}...")
        try:
            credential = await self._deriver.derive(account)
            self._credentials[address] = credential
            return credential
        except CredentialDerivationFailed:
            logger.error(f"Credential derivation rejected for {address[:10]}...")
            raise
        except Exception as e:
            logger.error(f"Credential derivation failed for {address[:10]}...: {e}")
            raise CredentialDerivationFailed(f"Could not derive API credentials: {e}") from e
        finally:
            self._in_flight.pop(address, None)
