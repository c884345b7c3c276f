"""
Custody keys and ledger addresses.

A custody key is a secp256k1 private scalar. It lives in memory only inside a
``CustodyKey`` (zeroed when wiped or collected) and at rest only as a Fernet
token produced by ``KeyVault``.
"""

import hashlib
import hmac
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import InvalidKeyError

KEY_LENGTH = 32
# Order of the secp256k1 group; valid scalars are 1..n-1
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class CustodyKey:
    __slots__ = ("_material",)

    def __init__(self, material: bytes):
        if len(material) != KEY_LENGTH:
            raise InvalidKeyError(f"Key must be {KEY_LENGTH} bytes")
        scalar = int.from_bytes(material, "big")
        if not 0 < scalar < SECP256K1_ORDER:
            raise InvalidKeyError("Key is outside the secp256k1 range")
        self._material = bytearray(material)

    def __repr__(self) -> str:
        return "CustodyKey(****)"

    __str__ = __repr__

    def __eq__(self, other) -> bool:
        if not isinstance(other, CustodyKey):
            return NotImplemented
        return hmac.compare_digest(bytes(self._material), bytes(other._material))

    __hash__ = None

    def __enter__(self) -> "CustodyKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __del__(self):
        # __init__ may have rejected the material before storing it
        if hasattr(self, "_material"):
            self.wipe()

    @property
    def wiped(self) -> bool:
        return not any(self._material)

    def wipe(self) -> None:
        for i in range(len(self._material)):
            self._material[i] = 0

    def reveal(self) -> bytes:
        if self.wiped:
            raise InvalidKeyError("Key material has been wiped")
        return bytes(self._material)


def generate_secret_key() -> CustodyKey:
    private_key = ec.generate_private_key(ec.SECP256K1())
    return CustodyKey(private_key.private_numbers().private_value.to_bytes(KEY_LENGTH, "big"))


def get_key_bytes(key: str) -> bytes:
    key = key[2:] if key[:2].lower() == "0x" else key
    try:
        return bytes.fromhex(key)
    except ValueError as exc:
        raise InvalidKeyError("Key is not valid hexadecimal") from exc


def parse_secret_key(key: str) -> CustodyKey:
    return CustodyKey(get_key_bytes(key))


def derive_address(key: CustodyKey) -> str:
    private_key = ec.derive_private_key(int.from_bytes(key.reveal(), "big"), ec.SECP256K1())
    point = private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return "0x" + hashlib.sha3_256(point[1:]).digest()[-20:].hex()


class KeyVault:
    """Seals custody keys for storage with a Fernet key."""

    def __init__(self, encryption_key: Optional[str] = None):
        try:
            self._fernet = Fernet(encryption_key or Fernet.generate_key())
        except ValueError as exc:
            raise InvalidKeyError("Key encryption key is not a valid Fernet key") from exc
        self.ephemeral = not encryption_key

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def seal(self, key: CustodyKey) -> str:
        return self._fernet.encrypt(key.reveal()).decode("ascii")

    def unseal(self, token: str) -> CustodyKey:
        try:
            material = bytearray(self._fernet.decrypt(token.encode("ascii")))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise InvalidKeyError("Sealed key cannot be decrypted") from exc
        try:
            return CustodyKey(bytes(material))
        finally:
            for i in range(len(material)):
                material[i] = 0
