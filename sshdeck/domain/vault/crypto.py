"""
Vault encryption using scrypt + AES-256-GCM.

File layout (all integers big-endian):

    prefix  magic(8) | version(u16) | header_len(u16) | crc32(u32)
    header  kdf_id(u8) | log2_n(u8) | r(u8) | p(u8) | salt_len(u8) | salt | nonce(12)
    body    AES-GCM ciphertext and tag

The CRC only guards the prefix, so a damaged prefix is told apart from a
genuinely newer format. Prefix and header are bound to the ciphertext as
associated data; any change to them fails authentication.
"""
import os
import struct
import zlib
from dataclasses import dataclass
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ...core.constants import (
    DEFAULT_KDF_LOG2_N,
    DEFAULT_KDF_P,
    DEFAULT_KDF_R,
    KDF_SCRYPT,
    MAX_KDF_LOG2_N,
    MAX_KDF_MEMORY,
    MAX_KDF_P,
    MAX_KDF_R,
    MIN_KDF_LOG2_N,
    VAULT_FORMAT_VERSION,
    VAULT_KEY_SIZE,
    VAULT_MAGIC,
    VAULT_NONCE_SIZE,
    VAULT_SALT_SIZE,
)
from ...core.exceptions import VaultCorrupt, VaultUnsupportedVersion, WrongPassword

_PREFIX = struct.Struct(">8sHHI")
_PREFIX_BODY = struct.Struct(">8sHH")
_KDF = struct.Struct(">BBBBB")


@dataclass(frozen=True)
class KdfParams:
    """scrypt cost parameters"""
    log2_n: int = DEFAULT_KDF_LOG2_N
    r: int = DEFAULT_KDF_R
    p: int = DEFAULT_KDF_P

    @property
    def n(self) -> int:
        return 1 << self.log2_n

    def is_valid(self) -> bool:
        return (
            MIN_KDF_LOG2_N <= self.log2_n <= MAX_KDF_LOG2_N
            and 1 <= self.r <= MAX_KDF_R
            and 1 <= self.p <= MAX_KDF_P
            and 128 * self.r * self.n <= MAX_KDF_MEMORY
        )


@dataclass(frozen=True)
class VaultHeader:
    """Everything needed to re-derive the key and open the ciphertext"""
    params: KdfParams
    salt: bytes
    nonce: bytes
    version: int = VAULT_FORMAT_VERSION

    def pack(self) -> bytes:
        """Serialize prefix and header; the result is the associated data"""
        header = (
            _KDF.pack(KDF_SCRYPT, self.params.log2_n, self.params.r, self.params.p, len(self.salt))
            + self.salt
            + self.nonce
        )
        body = _PREFIX_BODY.pack(VAULT_MAGIC, self.version, len(header))
        return body + struct.pack(">I", zlib.crc32(body)) + header

    @classmethod
    def fresh(cls, params: KdfParams) -> "VaultHeader":
        """New header with a random salt and nonce"""
        return cls(params=params, salt=os.urandom(VAULT_SALT_SIZE), nonce=os.urandom(VAULT_NONCE_SIZE))

    def with_new_nonce(self) -> "VaultHeader":
        """Same salt and KDF, fresh nonce (a nonce is never reused under one key)"""
        return VaultHeader(params=self.params, salt=self.salt, nonce=os.urandom(VAULT_NONCE_SIZE))


def derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    """
    Derive a 256-bit AES key from the master password.

    Args:
        password: Master password
        salt: Per-file random salt
        params: scrypt cost parameters

    Returns:
        32-byte key suitable for AES-256-GCM
    """
    kdf = Scrypt(salt=salt, length=VAULT_KEY_SIZE, n=params.n, r=params.r, p=params.p)
    return kdf.derive(password.encode("utf-8"))


def parse_vault(data: bytes) -> Tuple[VaultHeader, bytes, bytes]:
    """
    Split a vault file into header, associated data and ciphertext.

    Raises:
        VaultCorrupt: Damaged prefix or malformed header
        VaultUnsupportedVersion: Intact prefix with an unknown version
    """
    if len(data) < _PREFIX.size:
        raise VaultCorrupt("File is too short")

    magic, version, header_len, crc = _PREFIX.unpack_from(data)
    if zlib.crc32(data[:_PREFIX_BODY.size]) != crc:
        raise VaultCorrupt("Header checksum mismatch")
    if magic != VAULT_MAGIC:
        raise VaultCorrupt("Not a vault file")
    if version != VAULT_FORMAT_VERSION:
        raise VaultUnsupportedVersion(f"Format version {version} (supported: {VAULT_FORMAT_VERSION})")

    header_end = _PREFIX.size + header_len
    if header_len < _KDF.size or len(data) < header_end:
        raise VaultCorrupt("Truncated header")

    kdf_id, log2_n, r, p, salt_len = _KDF.unpack_from(data, _PREFIX.size)
    if kdf_id != KDF_SCRYPT:
        raise VaultCorrupt(f"Unknown key derivation function {kdf_id}")
    if header_len != _KDF.size + salt_len + VAULT_NONCE_SIZE or salt_len == 0:
        raise VaultCorrupt("Header length mismatch")

    params = KdfParams(log2_n=log2_n, r=r, p=p)
    if not params.is_valid():
        raise VaultCorrupt(f"Key derivation parameters out of range: {params}")

    salt_start = _PREFIX.size + _KDF.size
    salt = data[salt_start:salt_start + salt_len]
    nonce = data[salt_start + salt_len:header_end]
    ciphertext = data[header_end:]
    if not ciphertext:
        raise VaultCorrupt("Missing ciphertext")

    header = VaultHeader(params=params, salt=salt, nonce=nonce, version=version)
    return header, data[:header_end], ciphertext


def seal(key: bytes, header: VaultHeader, plaintext: bytes) -> bytes:
    """Encrypt plaintext into a complete vault file image"""
    aad = header.pack()
    return aad + AESGCM(key).encrypt(header.nonce, plaintext, aad)


def open_sealed(key: bytes, header: VaultHeader, aad: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt and authenticate the vault body.

    Raises:
        WrongPassword: Authentication failed (wrong key or tampered data)
    """
    try:
        return AESGCM(key).decrypt(header.nonce, ciphertext, aad)
    except InvalidTag as e:
        raise WrongPassword() from e
