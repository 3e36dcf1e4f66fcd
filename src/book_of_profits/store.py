"""Encrypted state store.

The data file is a small JSON envelope::

    {"format_version": 1, "encrypted": false, "state": {...}}

or, when a password is set::

    {"format_version": 1, "encrypted": true, "kdf": "scrypt",
     "kdf_params": {"n": ..., "r": ..., "p": ...},
     "salt": "<b64>", "nonce": "<b64>", "ciphertext": "<b64>"}

The key is derived from the password with scrypt and the state is sealed
with AES-256-GCM, using the envelope header as associated data, so a wrong
password or a tampered file is detected instead of decrypting to garbage.
Writes go to a temporary file in the same directory which is only swapped
over the target once it is completely on disk.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

import pydantic
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from book_of_profits.errors import AuthError, CorruptionError, StoreIOError, VersionError
from book_of_profits.models import StateModel

logger = logging.getLogger("book_of_profits.store")

FORMAT_VERSION = 1
SUPPORTED_VERSIONS = frozenset({1})

# scrypt parameters for newly written files (read back from the envelope)
SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1
SALT_SIZE = 16
NONCE_SIZE = 12  # 96 bits, recommended for GCM
KEY_SIZE = 32


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


def derive_key(password: str, salt: bytes, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P) -> bytes:
    """Derive the AES-256 key for *password* with scrypt."""
    return Scrypt(salt=salt, length=KEY_SIZE, n=n, r=r, p=p).derive(password.encode("utf-8"))


def _header(envelope: dict[str, Any]) -> bytes:
    """Canonical bytes of everything but the ciphertext (GCM associated data)."""
    fields = {k: v for k, v in envelope.items() if k != "ciphertext"}
    return json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encrypt_state(plaintext: bytes, password: str) -> dict[str, Any]:
    """Seal *plaintext* into an encrypted envelope."""
    salt = secrets.token_bytes(SALT_SIZE)
    nonce = secrets.token_bytes(NONCE_SIZE)
    envelope: dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "encrypted": True,
        "kdf": "scrypt",
        "kdf_params": {"n": SCRYPT_N, "r": SCRYPT_R, "p": SCRYPT_P},
        "salt": base64.b64encode(salt).decode("ascii"),
        "nonce": base64.b64encode(nonce).decode("ascii"),
    }
    key = derive_key(password, salt, SCRYPT_N, SCRYPT_R, SCRYPT_P)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, _header(envelope))
    envelope["ciphertext"] = base64.b64encode(ciphertext).decode("ascii")
    return envelope


def decrypt_state(envelope: dict[str, Any], password: str) -> bytes:
    """Open an encrypted envelope.

    Raises
    ------
    AuthError
        If the password is wrong or the file was tampered with.
    CorruptionError
        If the envelope is missing fields or holds invalid base64.
    """
    try:
        if envelope.get("kdf") != "scrypt":
            raise CorruptionError(f"Unsupported key derivation {envelope.get('kdf')!r}")
        params = envelope["kdf_params"]
        n, r, p = int(params["n"]), int(params["r"]), int(params["p"])
        salt = base64.b64decode(envelope["salt"], validate=True)
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptionError(f"Encrypted data file is malformed: {exc}") from exc
    if len(nonce) != NONCE_SIZE or len(ciphertext) < 16:
        raise CorruptionError("Encrypted data file has invalid lengths")

    try:
        key = derive_key(password, salt, n, r, p)
    except ValueError as exc:
        raise CorruptionError(f"Invalid scrypt parameters: {exc}") from exc
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, _header(envelope))
    except InvalidTag:
        raise AuthError("Bad password") from None


# ---------------------------------------------------------------------------
# Envelope I/O
# ---------------------------------------------------------------------------


def _read_envelope(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise StoreIOError(f"Could not read data file {path}: {exc}") from exc
    try:
        envelope = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise CorruptionError(f"Data file {path} is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise CorruptionError(f"Data file {path} has an unexpected layout")

    version = envelope.get("format_version")
    if version not in SUPPORTED_VERSIONS:
        raise VersionError(
            f"Data file {path} has format version {version!r}; "
            f"supported: {sorted(SUPPORTED_VERSIONS)}"
        )
    return envelope


def _atomic_write(path: Path, data: bytes) -> None:
    """Write *data* to a sibling temp file, fsync it and swap it into place."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        # mkstemp creates the file with mode 0600
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise StoreIOError(f"Could not write data file {path}: {exc}") from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException as exc:
        tmp_path.unlink(missing_ok=True)
        if isinstance(exc, OSError):
            raise StoreIOError(f"Could not write data file {path}: {exc}") from exc
        raise


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_encrypted(path: Path) -> bool:
    """Whether the data file at *path* needs a password to be opened."""
    return bool(_read_envelope(path).get("encrypted"))


def load(path: Path, password: Optional[str] = None) -> StateModel:
    """Read and (if needed) decrypt the data file.

    Raises
    ------
    FileNotFoundError
        If there is no data file yet.
    AuthError
        If the file is encrypted and *password* is missing or wrong.
    VersionError
        If the file's format version is not recognized.
    CorruptionError
        If the file cannot be parsed into a valid state.
    """
    envelope = _read_envelope(path)
    if envelope.get("encrypted"):
        if not password:
            raise AuthError("The data file is encrypted, a password is required")
        plaintext = decrypt_state(envelope, password)
        try:
            data = json.loads(plaintext)
        except (UnicodeDecodeError, ValueError) as exc:
            raise CorruptionError("Bad decrypted data") from exc
    else:
        data = envelope.get("state")
        if not isinstance(data, dict):
            raise CorruptionError(f"Data file {path} has no state")

    try:
        model = StateModel.model_validate(data)
    except pydantic.ValidationError as exc:
        raise CorruptionError(f"Data file {path} holds an invalid state: {exc}") from exc
    logger.info(
        f"Loaded {len(model.accounts)} account(s) and {len(model.tokens)} token(s) from {path}"
    )
    return model


def persist(model: StateModel, path: Path, password: Optional[str] = None) -> None:
    """Atomically write *model* to *path*, encrypted when *password* is given.

    Any failure raises ``StoreIOError`` and leaves the previous file as it was.
    """
    try:
        state = model.model_dump(mode="json")
        if password:
            plaintext = json.dumps(state, separators=(",", ":")).encode("utf-8")
            envelope = encrypt_state(plaintext, password)
        else:
            envelope = {"format_version": FORMAT_VERSION, "encrypted": False, "state": state}
        data = json.dumps(envelope, indent=2).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise StoreIOError(f"Could not serialize state: {exc}") from exc

    _atomic_write(path, data)
    logger.info(f"Saved data file {path} ({'encrypted' if password else 'plaintext'})")


def export_raw(model: StateModel) -> str:
    """Plaintext JSON of the whole state, whether or not the file is encrypted.

    The output contains every tracked address; handling it is the caller's
    responsibility.
    """
    return json.dumps(model.model_dump(mode="json"), indent=2)
