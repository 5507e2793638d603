"""
Session Token Stores.

The login flow hands the token issued by a successful verify call to a
``TokenStore`` and never looks inside it.  Two implementations:

- :class:`InMemoryTokenStore` keeps the token for the process lifetime.
- :class:`EncryptedFileTokenStore` persists it to a single file encrypted
  with AES-256-GCM, so a restarted client can call protected endpoints
  without logging in again.

Security model (file store)
---------------------------
- The AES key is derived at runtime from machine identity
  (hostname + OS username) via PBKDF2-HMAC-SHA256 with a per-machine
  random salt stored next to the token file.  The key is never written
  to disk.
- The file layout is ``nonce (16) | tag (16) | ciphertext``.
- A file that cannot be decrypted (corruption, different machine or OS
  user) reads as "no token"; it is never partially trusted.
"""

from __future__ import annotations

import getpass
import os
import platform
import socket
import stat
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from realm_login.logger import StructuredLogger
from realm_login.services.base_service import BaseService


@runtime_checkable
class TokenStore(Protocol):
    """Persistence boundary for the issued session token."""

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...

    def get(self) -> Optional[str]: ...


class InMemoryTokenStore:
    """Lock-guarded holder for the current session token."""

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._token: Optional[str] = None

    def set(self, token: str) -> None:
        if not token:
            raise ValueError("token must be a non-empty string")
        with self._lock:
            self._token = token

    def clear(self) -> None:
        with self._lock:
            self._token = None

    def get(self) -> Optional[str]:
        with self._lock:
            return self._token


class EncryptedFileTokenStore(BaseService):
    """AES-256-GCM encrypted, file-backed token store.

    Parameters
    ----------
    path:
        Location of the encrypted token file.  The salt file is written
        alongside it as ``<name>.salt``.
    logger:
        Structured JSON logger.
    iterations:
        PBKDF2 iteration count (OWASP 2023 recommendation by default).
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32
    _NONCE_LENGTH: int = 16
    _TAG_LENGTH: int = 16

    def __init__(
        self,
        path: Path,
        logger: StructuredLogger,
        iterations: int = _PBKDF2_ITERATIONS,
    ) -> None:
        super().__init__(logger)
        self._iterations: int = iterations
        self._path: Path = Path(path)
        self._salt_path: Path = self._path.with_name(self._path.name + ".salt")
        self._lock: threading.RLock = threading.RLock()
        self._key: Optional[bytes] = None
        # Read-through cache; None means "not loaded yet".
        self._cached: Optional[str] = None

    # ------------------------------------------------------------------
    # TokenStore API
    # ------------------------------------------------------------------

    def set(self, token: str) -> None:
        """Encrypt *token* and replace the token file.

        Raises:
            ValueError: If *token* is empty.
            OSError: If the file or its salt cannot be written.
        """
        if not token:
            raise ValueError("token must be a non-empty string")
        with self._lock:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=os.urandom(self._NONCE_LENGTH))
            ciphertext, tag = cipher.encrypt_and_digest(token.encode("utf-8"))
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_name(self._path.name + ".tmp")
            tmp_path.write_bytes(cipher.nonce + tag + ciphertext)
            self._restrict_permissions(tmp_path)
            os.replace(tmp_path, self._path)
            self._cached = token
        self._logger.info("Session token stored at %s.", self._path)

    def clear(self) -> None:
        """Delete the token file.  Safe to call when none exists."""
        with self._lock:
            self._cached = None
            try:
                self._path.unlink()
            except FileNotFoundError:
                return
        self._logger.info("Session token cleared.")

    def get(self) -> Optional[str]:
        """Return the decrypted token, or ``None`` if absent or unreadable."""
        with self._lock:
            if self._cached is not None:
                return self._cached
            if not self._path.is_file():
                return None
            blob = self._path.read_bytes()
            header = self._NONCE_LENGTH + self._TAG_LENGTH
            if len(blob) <= header:
                self._logger.warning("Token file is truncated; ignoring it.")
                return None
            nonce = blob[:self._NONCE_LENGTH]
            tag = blob[self._NONCE_LENGTH:header]
            try:
                cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=nonce)
                plaintext = cipher.decrypt_and_verify(blob[header:], tag)
                token = plaintext.decode("utf-8")
            except (ValueError, KeyError) as exc:
                self._logger.warning(
                    "Token file could not be decrypted (corrupted data or "
                    "machine identity changed): %s",
                    exc,
                )
                return None
            self._cached = token
            return token

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive the AES key from machine identity and the salt file.

        Caller MUST hold ``self._lock``.
        """
        if self._key is None:
            identity = f"{socket.gethostname()}:{getpass.getuser()}"
            self._key = PBKDF2(
                password=identity,
                salt=self._get_or_create_salt(),
                dkLen=self._KEY_LENGTH,
                count=self._iterations,
                hmac_hash_module=SHA256,
            )
        return self._key

    def _get_or_create_salt(self) -> bytes:
        if self._salt_path.is_file():
            data = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )
        salt = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        self._restrict_permissions(self._salt_path)
        self._logger.info("Token store salt created at %s.", self._salt_path)
        return salt

    @staticmethod
    def _restrict_permissions(path: Path) -> None:
        # NTFS ACLs are left to the installer on Windows.
        if platform.system() != "Windows":
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
