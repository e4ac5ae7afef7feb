"""Encrypted store for credentials referenced from the config.

Holds things like ``FCM_SERVER_KEY`` and ``SHOPFLOOR_HUB_TOKEN`` so they can
be interpolated into ``${VAR}`` placeholders without sitting in plain text
next to the config.

File layout::

    [8 bytes:  magic "SFBSECRT"]
    [1 byte:   format version = 0x01]
    [16 bytes: random associated data]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext + 16-byte tag]

The 32-byte key lives in a separate key file (mode 0600).
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"SFBSECRT"
VERSION = 0x01
AAD_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
_HEADER_LEN = len(MAGIC) + 1 + AAD_LEN + NONCE_LEN


class SecretsError(Exception):
    """The secrets file or key file is unusable."""


def read_key(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        raise SecretsError(f"Key file not found: {key_file}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretsError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def _ensure_key(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        kf.parent.mkdir(parents=True, exist_ok=True)
        kf.write_bytes(AESGCM.generate_key(bit_length=256))
        os.chmod(kf, 0o600)
    return read_key(kf)


def init_secrets(secrets_file: str | Path, key_file: str | Path) -> None:
    """Create an empty store, generating the key file if it does not exist."""
    key = _ensure_key(key_file)
    write_store(Path(secrets_file), key, {})


def set_secret(secrets_file: str | Path, key_file: str | Path, name: str, value: str) -> None:
    key = read_key(key_file)
    store = read_store(Path(secrets_file), key)
    store[name] = value
    write_store(Path(secrets_file), key, store)


def delete_secret(secrets_file: str | Path, key_file: str | Path, name: str) -> bool:
    """Remove *name*; returns whether it was present."""
    key = read_key(key_file)
    store = read_store(Path(secrets_file), key)
    if name not in store:
        return False
    del store[name]
    write_store(Path(secrets_file), key, store)
    return True


def list_secrets(secrets_file: str | Path, key_file: str | Path) -> list[str]:
    """Names only; values never leave the store through this call."""
    return sorted(read_store(Path(secrets_file), read_key(key_file)))


def load_secrets(secrets_file: str | Path, key_file: str | Path) -> dict[str, str]:
    return read_store(Path(secrets_file), read_key(key_file))


def rekey(secrets_file: str | Path, old_key_file: str | Path, new_key_file: str | Path) -> None:
    """Re-encrypt the store under a new (possibly freshly generated) key."""
    store = read_store(Path(secrets_file), read_key(old_key_file))
    write_store(Path(secrets_file), _ensure_key(new_key_file), store)


def write_store(path: Path, key: bytes, store: dict[str, str]) -> None:
    aad = os.urandom(AAD_LEN)
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store), aad)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "wb") as fh:
        fh.write(MAGIC + bytes([VERSION]) + aad + nonce + ciphertext)
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


def read_store(path: Path, key: bytes) -> dict[str, str]:
    data = path.read_bytes()
    if len(data) < _HEADER_LEN or data[:len(MAGIC)] != MAGIC:
        raise SecretsError(f"{path} is not a secrets file")
    if data[len(MAGIC)] != VERSION:
        raise SecretsError(f"Unsupported secrets file version: {data[len(MAGIC)]}")

    offset = len(MAGIC) + 1
    aad = data[offset:offset + AAD_LEN]
    nonce = data[offset + AAD_LEN:_HEADER_LEN]
    try:
        plaintext = AESGCM(key).decrypt(nonce, data[_HEADER_LEN:], aad)
    except InvalidTag as exc:
        raise SecretsError("Wrong key or corrupted secrets file") from exc
    return orjson.loads(plaintext)
