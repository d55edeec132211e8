# services/crypto.py
"""
Symmetric encryption for secrets stored in the settings table.

Blob format is ``hex(iv):hex(ciphertext)``: AES-256-CBC, PKCS7 padding, a fresh
16-byte IV per write. The key is derived once from ENCRYPTION_KEY with scrypt
(N=2**14, r=8, p=1) and a fixed salt, so rows written by earlier deployments
of the platform keep decrypting.
"""

from __future__ import annotations
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

log = logging.getLogger(__name__)

_SALT = b"salt"
_IV_LEN = 16
_DEV_KEY = "projcontest-encryption-key-32ch"


class DecryptionError(ValueError):
    pass


def _master_key_from_env() -> str:
    key = os.getenv("ENCRYPTION_KEY")
    if key:
        return key
    if os.getenv("APP_ENV", "development").lower() == "production":
        raise RuntimeError("ENCRYPTION_KEY must be set in production (.env)")
    log.warning("ENCRYPTION_KEY not set; using the development key")
    return _DEV_KEY


def derive_key(master: str) -> bytes:
    kdf = Scrypt(salt=_SALT, length=32, n=2 ** 14, r=8, p=1)
    return kdf.derive(master.encode("utf-8"))


class SecretBox:
    def __init__(self, master_key: str | None = None):
        self._key = derive_key(master_key or _master_key_from_env())

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LEN)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        enc = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ct = enc.update(data) + enc.finalize()
        return iv.hex() + ":" + ct.hex()

    def decrypt(self, blob: str) -> str:
        iv_hex, sep, ct_hex = (blob or "").partition(":")
        if not sep or not iv_hex or not ct_hex:
            raise DecryptionError("malformed blob")
        try:
            iv = bytes.fromhex(iv_hex)
            ct = bytes.fromhex(ct_hex)
        except ValueError as e:
            raise DecryptionError("blob is not hex") from e
        if len(iv) != _IV_LEN or not ct or len(ct) % _IV_LEN:
            raise DecryptionError("bad iv or ciphertext length")

        dec = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            data = unpadder.update(dec.update(ct) + dec.finalize())
            data += unpadder.finalize()
            return data.decode("utf-8")
        except ValueError as e:
            # wrong key shows up as bad padding or garbage bytes
            raise DecryptionError("could not decrypt") from e
