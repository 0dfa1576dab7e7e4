"""Encrypted per-alias secret store.

The keychain is a small JSON document holding one record (password and/or
private key content) per alias. It starts out in plain form; encryption can be
switched on exactly once, after which the records mapping is stored as an
AES-256-GCM blob keyed by scrypt(password).

Every write goes to a temporary file in the same directory and is moved over
the store with ``os.replace``, so a crash leaves either the old or the new
file on disk.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from sshed.errors import (
    AlreadyEncryptedError,
    CorruptError,
    DecryptError,
    NotFoundError,
    PasswordRequiredError,
    StorageError,
)

logger = logging.getLogger(__name__)

STORE_VERSION = 1
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1


@dataclass(slots=True)
class Record:
    """Secret material stored for one alias. Empty strings mean "none"."""

    password: str = ""
    private_key: str = ""


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def derive_key(password: str, salt: bytes, *, n: int, r: int, p: int) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LEN, n=n, r=r, p=p)
    return kdf.derive(password.encode("utf-8"))


class Keychain:
    """Alias -> Record store with optional whole-store password protection.

    Use :meth:`open` rather than the constructor. Records of an encrypted
    store are decrypted on first access, once :meth:`unlock` has supplied
    the password; the password itself is never written anywhere.
    """

    def __init__(self, path: Path, document: dict[str, Any], *, bootstrapped: bool) -> None:
        self.path = path
        self.bootstrapped = bootstrapped
        self._document = document
        self._password: str | None = None
        self._key: bytes | None = None
        self._records: dict[str, Record] | None = None
        if not self.encrypted:
            self._records = self._records_from_json(document.get("records", {}))

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, path: Path | str) -> Keychain:
        """Open the store at *path*, creating an empty plain store if absent.

        ``bootstrapped`` is False on the returned object only when this call
        created the file, so the caller can offer to enable encryption.
        """
        path = Path(path).expanduser()

        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            raw = None
        except OSError as exc:
            raise StorageError(f"Cannot read keychain {path}: {exc}") from exc

        if raw is None or not raw.strip():
            logger.info("Creating keychain at %s", path)
            document = {"version": STORE_VERSION, "encrypted": False, "records": {}}
            keychain = cls(path, document, bootstrapped=False)
            keychain._commit()
            return keychain

        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptError(f"Keychain {path} is not a valid store: {exc}") from exc

        cls._validate(path, document)
        return cls(path, document, bootstrapped=True)

    @staticmethod
    def _validate(path: Path, document: Any) -> None:
        if not isinstance(document, dict):
            raise CorruptError(f"Keychain {path} is not a valid store.")
        if document.get("version") != STORE_VERSION:
            raise CorruptError(
                f"Keychain {path} has unsupported version {document.get('version')!r}."
            )
        if document.get("encrypted"):
            kdf = document.get("kdf")
            if not isinstance(kdf, dict) or kdf.get("name") != "scrypt":
                raise CorruptError(f"Keychain {path} has no usable key derivation parameters.")
            if not isinstance(kdf.get("salt"), str):
                raise CorruptError(f"Keychain {path} has a malformed kdf salt.")
            for name in ("n", "r", "p"):
                value = kdf.get(name)
                if type(value) is not int or value < 1:
                    raise CorruptError(f"Keychain {path} has a malformed kdf parameter '{name}'.")
            if kdf["n"] < 2 or kdf["n"] & (kdf["n"] - 1):
                raise CorruptError(f"Keychain {path}: kdf parameter 'n' must be a power of two.")
            for name in ("nonce", "ciphertext"):
                if not isinstance(document.get(name), str):
                    raise CorruptError(f"Keychain {path} is missing '{name}'.")
        elif not isinstance(document.get("records"), dict):
            raise CorruptError(f"Keychain {path} has no records mapping.")

    # ------------------------------------------------------------------
    # Encryption state
    # ------------------------------------------------------------------

    @property
    def encrypted(self) -> bool:
        return bool(self._document.get("encrypted"))

    def unlock(self, password: str) -> None:
        """Supply the password for this process. Validated on first record access."""
        self._password = password
        self._key = None
        if self.encrypted:
            self._records = None

    def encrypt_database(self, password: str) -> None:
        """Switch the store to encrypted form under *password*. One-shot."""
        if self.encrypted:
            raise AlreadyEncryptedError("Keychain is already encrypted.")
        if not password:
            raise ValueError("Keychain password must not be empty.")

        records = self._load_records()
        salt = os.urandom(SALT_LEN)
        self._document = {
            "version": STORE_VERSION,
            "encrypted": True,
            "kdf": {"name": "scrypt", "salt": _b64e(salt), "n": SCRYPT_N, "r": SCRYPT_R, "p": SCRYPT_P},
        }
        self._password = password
        self._key = derive_key(password, salt, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        self._records = records
        self._commit()
        logger.info("Keychain %s is now encrypted", self.path)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, alias: str) -> Record:
        records = self._load_records()
        try:
            record = records[alias]
        except KeyError:
            raise NotFoundError(f"no keychain record for '{alias}'") from None
        return Record(record.password, record.private_key)

    def find(self, alias: str) -> Record | None:
        """Like :meth:`get` but returns None for a missing alias."""
        try:
            return self.get(alias)
        except NotFoundError:
            return None

    def put(self, alias: str, record: Record) -> None:
        records = self._load_records()
        records[alias] = Record(record.password, record.private_key)
        self._commit()

    def remove(self, alias: str) -> None:
        records = self._load_records()
        if records.pop(alias, None) is not None:
            self._commit()

    def aliases(self) -> list[str]:
        return sorted(self._load_records())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _records_from_json(data: dict[str, Any]) -> dict[str, Record]:
        records: dict[str, Record] = {}
        for alias, item in data.items():
            if not isinstance(item, dict):
                raise CorruptError(f"Keychain record for '{alias}' is malformed.")
            records[alias] = Record(
                password=str(item.get("password", "")),
                private_key=str(item.get("private_key", "")),
            )
        return records

    def _derived_key(self) -> bytes:
        if self._key is None:
            if self._password is None:
                raise PasswordRequiredError("Keychain is encrypted; a password is required.")
            kdf = self._document["kdf"]
            try:
                salt = _b64d(kdf["salt"])
            except ValueError as exc:
                raise CorruptError(f"Keychain {self.path} has a malformed salt.") from exc
            try:
                self._key = derive_key(self._password, salt, n=kdf["n"], r=kdf["r"], p=kdf["p"])
            except ValueError as exc:
                raise CorruptError(f"Keychain {self.path} has unusable kdf parameters: {exc}") from exc
        return self._key

    def _load_records(self) -> dict[str, Record]:
        if self._records is not None:
            return self._records

        key = self._derived_key()
        try:
            nonce = _b64d(self._document["nonce"])
            ciphertext = _b64d(self._document["ciphertext"])
        except ValueError as exc:
            raise CorruptError(f"Keychain {self.path} has malformed ciphertext.") from exc

        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag:
            self._key = None
            raise DecryptError("Wrong keychain password.") from None

        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptError(f"Keychain {self.path} decrypted to invalid data.") from exc
        if not isinstance(data, dict):
            raise CorruptError(f"Keychain {self.path} decrypted to invalid data.")

        self._records = self._records_from_json(data)
        return self._records

    def _serialize(self) -> bytes:
        records = {alias: asdict(r) for alias, r in (self._records or {}).items()}
        if not self.encrypted:
            document = {"version": STORE_VERSION, "encrypted": False, "records": records}
        else:
            nonce = os.urandom(NONCE_LEN)
            payload = json.dumps(records, sort_keys=True).encode("utf-8")
            ciphertext = AESGCM(self._derived_key()).encrypt(nonce, payload, None)
            document = {
                "version": STORE_VERSION,
                "encrypted": True,
                "kdf": self._document["kdf"],
                "nonce": _b64e(nonce),
                "ciphertext": _b64e(ciphertext),
            }
        self._document = document
        return json.dumps(document, indent=2, sort_keys=True).encode("utf-8") + b"\n"

    def _commit(self) -> None:
        data = self._serialize()
        directory = self.path.parent
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        except OSError as exc:
            raise StorageError(f"Cannot write keychain {self.path}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StorageError(f"Cannot write keychain {self.path}: {exc}") from exc
        logger.debug("Wrote keychain %s", self.path)
