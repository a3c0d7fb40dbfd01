"""
Token stores for the Refresh Gate.

This module provides the key-value stores access tokens are saved to: a
process-local in-memory store and a secure store backed by the system keyring
with an encrypted file as fallback.
"""

import os
import json
import logging
import base64
from typing import Optional, Dict, Any, List
from pathlib import Path

import keyring
from keyring.errors import KeyringError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from refresh_gate.shared.exceptions import StorageError, ConfigurationError, ErrorCode
from refresh_gate.shared.interfaces import ITokenStore
from refresh_gate.shared.models import StoredEntry, TEXT_PLAIN

logger = logging.getLogger(__name__)

KEYRING_INDEX_KEY = "__index__"
KEYRING_ENCRYPTION_KEY = "encryption_key"


class InMemoryTokenStore(ITokenStore):
    """Dictionary-backed token store, shared by everything holding the instance."""

    def __init__(self):
        self._entries: Dict[str, StoredEntry] = {}

    def get(self, key: str) -> Optional[StoredEntry]:
        return self._entries.get(key)

    def put(
        self,
        key: str,
        value: str,
        media_type: str = TEXT_PLAIN,
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        self._entries[key] = StoredEntry(
            value=value,
            media_type=media_type,
            metadata=dict(metadata or {}),
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def keys(self) -> List[str]:
        return list(self._entries)


class SecureTokenStore(ITokenStore):
    """
    Secure storage for access tokens.

    Uses the system keyring when available and falls back to a
    Fernet-encrypted JSON file otherwise. The file encryption key lives in
    the keyring when possible, else in a 0600 key file next to the token
    file, or is derived from a passphrase when one is configured.
    """

    def __init__(
        self,
        service_name: str = "refresh-gate",
        storage_path: Optional[str] = None,
        use_keyring: bool = True,
        passphrase: Optional[str] = None
    ):
        self.service_name = service_name
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self.storage_path = Path(storage_path) if storage_path else self._get_storage_path()
        self._passphrase = None if passphrase is None else str(passphrase)

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Token store initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is usable."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_path(self) -> Path:
        """Get path for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            config_dir = Path(xdg_config) / 'refresh-gate'
        else:
            config_dir = Path.home() / '.config' / 'refresh-gate'

        return config_dir / 'tokens.enc'

    @property
    def _key_path(self) -> Path:
        return self.storage_path.with_suffix('.key')

    @property
    def _salt_path(self) -> Path:
        return self.storage_path.with_suffix('.salt')

    def _derive_key(self, passphrase: str) -> bytes:
        """Derive a Fernet key from a passphrase and a persisted salt."""
        if self._salt_path.exists():
            salt = self._salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            self._write_private_file(self._salt_path, salt)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self._passphrase:
            self._encryption_key = self._derive_key(self._passphrase)
            return self._encryption_key

        if self.keyring_available:
            try:
                stored_key = keyring.get_password(self.service_name, KEYRING_ENCRYPTION_KEY)
                if stored_key:
                    self._encryption_key = stored_key.encode()
                    return self._encryption_key
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        if self._key_path.exists():
            self._encryption_key = self._key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()

        stored = False
        if self.keyring_available:
            try:
                keyring.set_password(self.service_name, KEYRING_ENCRYPTION_KEY, key.decode())
                stored = True
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        if not stored:
            self._write_private_file(self._key_path, key)

        self._encryption_key = key
        return key

    def _write_private_file(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        os.chmod(path, 0o600)

    def _encrypt_data(self, data: str) -> bytes:
        return Fernet(self._get_encryption_key()).encrypt(data.encode())

    def _decrypt_data(self, encrypted_data: bytes) -> str:
        return Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()

    def put(
        self,
        key: str,
        value: str,
        media_type: str = TEXT_PLAIN,
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Store a token securely, replacing any previous entry under the key.

        Args:
            key: Store key (for example a registry path)
            value: Token value
            media_type: Media type recorded with the value
            metadata: Extra string properties, such as the refresh timestamp

        Raises:
            StorageError: If the entry could not be written
        """
        if not key:
            raise ConfigurationError("Token store key cannot be empty", config_key="storage_key")

        entry = StoredEntry(value=value, media_type=media_type, metadata=dict(metadata or {}))

        try:
            if self.keyring_available:
                self._put_keyring(key, entry)
            else:
                self._put_file(key, entry)

            logger.info(f"Token stored securely under {key}")

        except Exception as e:
            logger.error(f"Failed to store token: {e}")
            raise StorageError(f"Failed to store token: {e}", storage_key=key, cause=e)

    def _put_keyring(self, key: str, entry: StoredEntry) -> None:
        keyring.set_password(self.service_name, f"token_{key}", json.dumps(entry.to_dict()))

        index = self._read_keyring_index()
        if key not in index:
            index.append(key)
            keyring.set_password(self.service_name, KEYRING_INDEX_KEY, json.dumps(index))

    def _put_file(self, key: str, entry: StoredEntry) -> None:
        all_entries = self._load_file()
        all_entries[key] = entry.to_dict()
        self._save_file(all_entries)

    def get(self, key: str) -> Optional[StoredEntry]:
        """
        Retrieve the entry stored under a key.

        Returns:
            The stored entry, or None if absent or unreadable

        Raises:
            StorageError: If the keyring or the token file cannot be accessed
        """
        try:
            if self.keyring_available:
                value = keyring.get_password(self.service_name, f"token_{key}")
                data = json.loads(value) if value else None
            else:
                data = self._load_file().get(key)
        except (KeyringError, OSError) as e:
            logger.error(f"Failed to retrieve token: {e}")
            raise StorageError(
                f"Failed to retrieve token: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                storage_key=key,
                cause=e,
            )
        except ValueError as e:
            logger.warning(f"Ignoring unreadable token entry under {key}: {e}")
            return None

        try:
            return StoredEntry.from_dict(data) if data else None
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring malformed token entry under {key}: {e}")
            return None

    def delete(self, key: str) -> bool:
        """
        Remove the entry stored under a key.

        Returns:
            True if an entry was removed

        Raises:
            StorageError: If the keyring or the token file cannot be updated
        """
        try:
            if self.keyring_available:
                return self._delete_keyring(key)
            return self._delete_file(key)

        except (KeyringError, OSError) as e:
            logger.error(f"Failed to remove token: {e}")
            raise StorageError(
                f"Failed to remove token: {e}",
                error_code=ErrorCode.STORAGE_DELETE_FAILED,
                storage_key=key,
                cause=e,
            )

    def _delete_keyring(self, key: str) -> bool:
        if keyring.get_password(self.service_name, f"token_{key}") is None:
            return False

        keyring.delete_password(self.service_name, f"token_{key}")
        index = [k for k in self._read_keyring_index() if k != key]
        keyring.set_password(self.service_name, KEYRING_INDEX_KEY, json.dumps(index))
        return True

    def _delete_file(self, key: str) -> bool:
        all_entries = self._load_file()
        if key not in all_entries:
            return False

        del all_entries[key]
        if all_entries:
            self._save_file(all_entries)
        else:
            self.storage_path.unlink()
        return True

    def keys(self) -> List[str]:
        """List keys held by the store."""
        try:
            if self.keyring_available:
                return self._read_keyring_index()
            return list(self._load_file())
        except (KeyringError, OSError, ValueError) as e:
            logger.warning(f"Failed to list stored keys: {e}")
            return []

    def _read_keyring_index(self) -> List[str]:
        # keyring cannot enumerate entries, so the store keeps its own index
        value = keyring.get_password(self.service_name, KEYRING_INDEX_KEY)
        return json.loads(value) if value else []

    def _load_file(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}

        try:
            return json.loads(self._decrypt_data(self.storage_path.read_bytes()))
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Failed to read token file {self.storage_path}: {e}")
            return {}

    def _save_file(self, all_entries: Dict[str, Any]) -> None:
        self._write_private_file(self.storage_path, self._encrypt_data(json.dumps(all_entries)))

    def describe(self) -> List[Dict[str, Any]]:
        """
        Summarize stored entries without exposing token values.

        Returns:
            List of dictionaries with key, media type, metadata and storage time
        """
        summary = []
        for key in self.keys():
            entry = self.get(key)
            if entry:
                summary.append({
                    'key': key,
                    'media_type': entry.media_type,
                    'metadata': entry.metadata,
                    'stored_at': entry.stored_at.isoformat(),
                })
        return summary


def create_token_store(
    backend: str = "secure",
    service_name: str = "refresh-gate",
    storage_path: Optional[str] = None,
    use_keyring: bool = True,
    passphrase: Optional[str] = None
) -> ITokenStore:
    """
    Build the token store named by a configuration backend value.

    Args:
        backend: ``memory`` or ``secure``
        service_name: Keyring service name for the secure store
        storage_path: Encrypted file path for the secure store
        use_keyring: Whether the secure store may use the system keyring
        passphrase: Optional passphrase the file encryption key is derived from

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    backend = (backend or "").lower()
    if backend == "memory":
        return InMemoryTokenStore()
    if backend == "secure":
        return SecureTokenStore(
            service_name=service_name,
            storage_path=storage_path,
            use_keyring=use_keyring,
            passphrase=passphrase,
        )

    raise ConfigurationError(
        f"Unknown token storage backend: {backend!r}",
        error_code=ErrorCode.CONFIG_INVALID_VALUE,
        config_key="storage.backend",
    )
