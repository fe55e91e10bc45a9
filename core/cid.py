"""
Content Identifiers - CID кодек
===============================

[CID] Поддерживаемые формы:
- CIDv1: <varint version><varint codec><multihash>, multibase "b" (base32)
  или "z" (base58btc)
- CIDv0: голый sha2-256 multihash в base58btc ("Qm...")

[MULTIHASH] <varint hash code><varint digest length><digest>.

[DHT] Ключ записи провайдера = sha256(multihash), т.е. двойной хэш
содержимого; он же используется для prefix lookup.
"""

import base64
import hashlib
import io
from dataclasses import dataclass
from typing import Any, Tuple

import base58
import varint


# Коды multicodec
CODEC_RAW = 0x55
CODEC_DAG_PB = 0x70

# Коды multihash
SHA2_256 = 0x12
SHA2_256_SIZE = 32


def _read_varint(stream: io.BytesIO) -> int:
    try:
        return varint.decode_stream(stream)
    except (EOFError, TypeError) as e:
        raise ValueError(f"truncated varint: {e}") from e


def multihash_sha256(data: bytes) -> bytes:
    """sha2-256 multihash от данных."""
    digest = hashlib.sha256(data).digest()
    return varint.encode(SHA2_256) + varint.encode(len(digest)) + digest


def split_multihash(mh: bytes) -> Tuple[int, bytes]:
    """
    Разобрать multihash на (код, digest).

    Raises:
        ValueError: длина digest не совпадает с заявленной
    """
    stream = io.BytesIO(mh)
    code = _read_varint(stream)
    length = _read_varint(stream)
    digest = stream.read()
    if len(digest) != length:
        raise ValueError(f"multihash digest length mismatch: {len(digest)} != {length}")
    return code, digest


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").lower().rstrip("=")


def _b32decode(text: str) -> bytes:
    padded = text.upper() + "=" * (-len(text) % 8)
    try:
        return base64.b32decode(padded)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid base32: {e}") from e


@dataclass(frozen=True)
class CID:
    """Content identifier (CIDv0 или CIDv1)."""

    version: int
    codec: int
    multihash: bytes

    @classmethod
    def v1(cls, codec: int, multihash: bytes) -> "CID":
        return cls(version=1, codec=codec, multihash=multihash)

    @classmethod
    def raw_sha256(cls, data: bytes) -> "CID":
        """CIDv1 с raw кодеком от sha2-256 данных."""
        return cls.v1(CODEC_RAW, multihash_sha256(data))

    def to_bytes(self) -> bytes:
        if self.version == 0:
            return self.multihash
        return varint.encode(self.version) + varint.encode(self.codec) + self.multihash

    @classmethod
    def from_bytes(cls, data: bytes) -> "CID":
        # CIDv0: 0x12 0x20 + 32 байта
        if len(data) == 34 and data[0] == SHA2_256 and data[1] == SHA2_256_SIZE:
            return cls(version=0, codec=CODEC_DAG_PB, multihash=data)
        stream = io.BytesIO(data)
        version = _read_varint(stream)
        if version != 1:
            raise ValueError(f"unsupported CID version {version}")
        codec = _read_varint(stream)
        mh = stream.read()
        split_multihash(mh)
        return cls(version=1, codec=codec, multihash=mh)

    def encode(self) -> str:
        """Строковое представление (base32 для v1, base58btc для v0)."""
        if self.version == 0:
            return base58.b58encode(self.multihash).decode("ascii")
        return "b" + _b32encode(self.to_bytes())

    @classmethod
    def decode(cls, text: str) -> "CID":
        """
        Разобрать строковый CID.

        Raises:
            ValueError: неизвестный multibase или повреждённые данные
        """
        if not isinstance(text, str) or not text:
            raise ValueError("empty CID")
        if len(text) == 46 and text.startswith("Qm"):
            return cls.from_bytes(base58.b58decode(text))
        prefix, body = text[0], text[1:]
        if prefix in ("b", "B"):
            return cls.from_bytes(_b32decode(body))
        if prefix == "z":
            return cls.from_bytes(base58.b58decode(body))
        raise ValueError(f"unsupported multibase prefix {prefix!r}")

    @classmethod
    def from_json(cls, value: Any) -> "CID":
        """Принять CID как строку или как {"/": "<cid>"}."""
        if isinstance(value, dict):
            value = value.get("/")
        if not isinstance(value, str):
            raise ValueError(f"invalid CID value {value!r}")
        return cls.decode(value)

    def to_json(self) -> dict:
        return {"/": self.encode()}

    def dht_key(self) -> bytes:
        """Ключ провайдерской записи в DHT (256 бит)."""
        return hashlib.sha256(self.multihash).digest()

    def __str__(self) -> str:
        return self.encode()
