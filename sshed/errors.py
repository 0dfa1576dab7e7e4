"""Exception taxonomy shared by the keychain, registry, and command builder."""

from __future__ import annotations


class SshedError(Exception):
    """Base class for every error sshed surfaces to its caller."""


class ConfigError(SshedError):
    """Raised when the settings file is invalid."""


class NotFoundError(SshedError):
    """Raised for an unknown alias, jump-host reference, or local file."""


class PasswordRequiredError(SshedError):
    """Raised when the keychain is encrypted and no password was supplied."""


class DecryptError(SshedError):
    """Raised when the supplied keychain password does not decrypt the store."""


class AlreadyEncryptedError(SshedError):
    """Raised when encryption is requested on an already-encrypted keychain."""


class CorruptError(SshedError):
    """Raised when persisted state (keychain, backup archive) is damaged."""


class StorageError(SshedError):
    """Raised on filesystem failures while reading, writing, or renaming."""


class ValidationError(SshedError):
    """A malformed line in the SSH config.

    The parser records these as warnings and keeps going; they are never raised
    out of ``SSHConfig.parse``.
    """

    def __init__(self, message: str, *, lineno: int, line: str) -> None:
        super().__init__(f"line {lineno}: {message}")
        self.lineno = lineno
        self.line = line


class ExecError(SshedError):
    """Raised when a subprocess fails to spawn or exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
