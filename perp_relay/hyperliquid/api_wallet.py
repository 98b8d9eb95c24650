"""API wallet registry.

Maps an owner address to the API wallet (agent) the relay holds for it.

Lifecycle per owner::

    no record -> created (unauthorised) -> authorised

There is no way back. Replacing an API wallet needs the record
deleted from the file by hand.

The registry is a single JSON file keyed by lowercase owner address.
Every mutation reads the whole file, changes it and writes it back.

- Mutations hold an exclusive lock file (``<path>.lock``) so concurrent
  requests cannot clobber each other's writes

- Writes go to a temporary file that is moved over the registry file,
  so a crash mid-write leaves the previous snapshot intact

- The private keys are plain text in the file. Protect it with
  file system permissions. Keys never appear in logs or ``repr()``.

The file format is compatible with ``api-wallets.json`` files
of the earlier JavaScript backend::

    {
      "0xabc...": {
        "userAddress": "0xabc...",
        "apiWalletAddress": "0xDef...",
        "apiWalletPrivateKey": "0x...",
        "createdAt": "2025-01-01T00:00:00.000Z",
        "authorized": true,
        "authorizedAt": "2025-01-01T00:01:00.000Z"
      }
    }
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

from eth_account import Account
from eth_typing import HexAddress
from filelock import FileLock, Timeout

from perp_relay.errors import IdentityUnavailable, PersistenceError, RecordNotFound, ValidationError
from perp_relay.hyperliquid.signing import HotWalletIdentity
from perp_relay.utils import normalise_address, utc_now_iso

logger = logging.getLogger(__name__)

#: How long a mutation waits for another writer, seconds
DEFAULT_LOCK_TIMEOUT = 30


@dataclass(slots=True, frozen=True)
class ApiWalletRecord:
    """One owner's API wallet."""

    #: Lowercase owner address, the primary key
    owner_address: HexAddress

    #: Checksummed API wallet address
    delegate_address: HexAddress

    #: Hex private key of the API wallet
    delegate_private_key: str = field(repr=False)

    #: ISO-8601 UTC
    created_at: str

    authorized: bool = False

    #: ISO-8601 UTC, set once when authorised
    authorized_at: str | None = None

    def to_json(self) -> dict:
        """Stored form, includes the private key."""
        return {
            "userAddress": self.owner_address,
            "apiWalletAddress": self.delegate_address,
            "apiWalletPrivateKey": self.delegate_private_key,
            "createdAt": self.created_at,
            "authorized": self.authorized,
            "authorizedAt": self.authorized_at,
        }

    @classmethod
    def from_json(cls, owner_address: str, data: dict) -> "ApiWalletRecord":
        return cls(
            owner_address=normalise_address(data.get("userAddress", owner_address)),
            delegate_address=data["apiWalletAddress"],
            delegate_private_key=data["apiWalletPrivateKey"],
            created_at=data["createdAt"],
            authorized=bool(data.get("authorized", False)),
            authorized_at=data.get("authorizedAt"),
        )

    def to_public_dict(self) -> dict:
        """Safe to return to clients, no private key."""
        return {
            "userAddress": self.owner_address,
            "apiWalletAddress": self.delegate_address,
            "createdAt": self.created_at,
            "authorized": self.authorized,
            "authorizedAt": self.authorized_at,
        }


def _owner_key(owner_address: str) -> HexAddress:
    try:
        return normalise_address(owner_address)
    except ValueError as e:
        raise ValidationError(str(e)) from e


class ApiWalletRegistry:
    """JSON file backed API wallet store.

    :param path:
        Registry file. Created on the first write.

    :param lock_timeout:
        Seconds to wait for the writer lock.
    """

    def __init__(self, path: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path)
        self.lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    def __repr__(self):
        return f"<ApiWalletRegistry {self.path}>"

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("rt", encoding="utf-8") as inp:
                data = json.load(inp)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read API wallet registry {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"API wallet registry {self.path} is not a JSON object")
        return data

    def _save(self, data: dict[str, dict]):
        try:
            fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        except OSError as e:
            raise PersistenceError(f"Cannot write API wallet registry {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "wt", encoding="utf-8") as out:
                json.dump(data, out, indent=2)
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self.path)
        except OSError as e:
            Path(temp_name).unlink(missing_ok=True)
            raise PersistenceError(f"Cannot write API wallet registry {self.path}: {e}") from e

    def _acquire(self):
        """Writer lock as a context manager."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return self.lock.acquire()
        except Timeout as e:
            raise PersistenceError(f"Timed out waiting for the API wallet registry lock {self.lock.lock_file}") from e
        except OSError as e:
            raise PersistenceError(f"Cannot lock API wallet registry {self.path}: {e}") from e

    def find(self, owner_address: str) -> ApiWalletRecord | None:
        key = _owner_key(owner_address)
        entry = self._load().get(key)
        if entry is None:
            return None
        try:
            return ApiWalletRecord.from_json(key, entry)
        except (KeyError, ValueError) as e:
            raise PersistenceError(f"Corrupted API wallet record for {key}: {e}") from e

    def exists(self, owner_address: str) -> bool:
        return self.find(owner_address) is not None

    def get(self, owner_address: str) -> ApiWalletRecord:
        """:raise RecordNotFound: No API wallet for the owner"""
        record = self.find(owner_address)
        if record is None:
            raise RecordNotFound(f"API wallet not found for {owner_address}")
        return record

    def create_if_absent(self, owner_address: str) -> ApiWalletRecord:
        """Get the owner's API wallet, creating one on the first call.

        Never regenerates the key of an existing record:
        the exchange may already have the old agent authorised.
        """
        key = _owner_key(owner_address)

        with self._acquire():
            data = self._load()
            if key in data:
                logger.info("API wallet already exists for %s", key)
                return ApiWalletRecord.from_json(key, data[key])

            account = Account.create()
            record = ApiWalletRecord(
                owner_address=key,
                delegate_address=account.address,
                delegate_private_key="0x" + bytes(account.key).hex(),
                created_at=utc_now_iso(),
            )
            data[key] = record.to_json()
            self._save(data)

        logger.info("Created API wallet %s for %s", record.delegate_address, key)
        return record

    def mark_authorized(self, owner_address: str) -> ApiWalletRecord:
        """Record that the exchange accepted the agent approval.

        Call only after a non-error exchange response.
        Authorising twice keeps the first timestamp.

        :raise RecordNotFound: No API wallet for the owner
        """
        key = _owner_key(owner_address)

        with self._acquire():
            data = self._load()
            if key not in data:
                raise RecordNotFound(f"API wallet not found for {owner_address}")

            record = ApiWalletRecord.from_json(key, data[key])
            if record.authorized:
                logger.info("API wallet %s for %s was already authorised at %s", record.delegate_address, key, record.authorized_at)
                return record

            record = replace(record, authorized=True, authorized_at=utc_now_iso())
            data[key] = record.to_json()
            self._save(data)

        logger.info("API wallet %s authorised for %s", record.delegate_address, key)
        return record

    def load_identity(self, owner_address: str) -> HotWalletIdentity:
        """Signing identity of the owner's authorised API wallet.

        :raise RecordNotFound: No API wallet for the owner
        :raise IdentityUnavailable: API wallet not authorised yet
        """
        record = self.get(owner_address)
        if not record.authorized:
            raise IdentityUnavailable(f"API wallet {record.delegate_address} for {record.owner_address} has not been authorised yet")
        return HotWalletIdentity.from_private_key(record.delegate_private_key)
