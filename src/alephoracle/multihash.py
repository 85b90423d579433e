"""
alephoracle/multihash.py

Content addressing for statement bodies.

A content reference is a multihash: the digest prefixed with its
hash-function code and digest length, rendered in base58. Encoding and
decoding of the binary multihash is done by pymultihash; this module adds
the checks the bridge needs on top of it (known function, full-length
digest, canonical base58) so a truncated or corrupted identifier never
reaches the peer node.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, NamedTuple, Union

import base58
import multihash as pymultihash

from .errors import InvalidReference

logger = logging.getLogger("alephoracle.multihash")


class HashFunction(NamedTuple):
    """A supported multihash function."""
    name: str
    func: pymultihash.Func
    length: int

    @property
    def code(self) -> int:
        return self.func.value


HASH_FUNCTIONS: Dict[str, HashFunction] = {
    "sha1": HashFunction("sha1", pymultihash.Func.sha1, 20),
    "sha2-256": HashFunction("sha2-256", pymultihash.Func.sha2_256, 32),
    "sha2-512": HashFunction("sha2-512", pymultihash.Func.sha2_512, 64),
}

HASH_CODES: Dict[int, HashFunction] = {f.code: f for f in HASH_FUNCTIONS.values()}

DEFAULT_HASH = "sha2-256"

# Read size for digest_file
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ContentReference:
    """
    Immutable multihash reference to a stored payload.

    Attributes:
        hash_function: Multihash function name (e.g. "sha2-256")
        digest: Raw digest bytes
        text: Canonical base58 form of the full multihash
    """
    hash_function: str
    digest: bytes
    text: str

    def __str__(self) -> str:
        return self.text

    @property
    def multihash(self) -> bytes:
        """Full multihash bytes (code, length, digest)."""
        return encode_multihash(self.digest, self.hash_function)


def _lookup(hash_function: str) -> HashFunction:
    func = HASH_FUNCTIONS.get(hash_function)
    if func is None:
        raise InvalidReference("", f"unknown hash function {hash_function}")
    return func


def _reference(func: HashFunction, digest: bytes) -> ContentReference:
    raw = pymultihash.Multihash(func.func, digest).encode()
    return ContentReference(func.name, digest, base58.b58encode(raw).decode("ascii"))


def encode_multihash(digest: bytes, hash_function: str = DEFAULT_HASH) -> bytes:
    """
    Wrap a raw digest with its hash-function code and length.

    Raises:
        InvalidReference: If the function is unknown or the digest length is wrong
    """
    func = HASH_FUNCTIONS.get(hash_function)
    if func is None:
        raise InvalidReference(digest.hex(), f"unknown hash function {hash_function}")
    if len(digest) != func.length:
        raise InvalidReference(
            digest.hex(),
            f"{hash_function} digest must be {func.length} bytes, got {len(digest)}"
        )
    return pymultihash.Multihash(func.func, digest).encode()


def digest_of(data: bytes, hash_function: str = DEFAULT_HASH) -> ContentReference:
    """
    Hash `data` and return its content reference.

    Args:
        data: Payload bytes
        hash_function: Multihash function name

    Returns:
        ContentReference whose text is the base58 multihash
    """
    func = _lookup(hash_function)
    mh = pymultihash.digest(data, func.func)
    return _reference(func, mh.digest)


def digest_file(path: Union[str, Path], hash_function: str = DEFAULT_HASH) -> ContentReference:
    """Hash a file's contents in chunks and return its content reference."""
    func = _lookup(hash_function)

    h = pymultihash.FuncReg.hash_from_func(func.func)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)

    return _reference(func, h.digest())


def parse(text: str) -> ContentReference:
    """
    Parse a base58 multihash string.

    Raises:
        InvalidReference: If the text is empty, not base58, carries an
            unknown hash-function code, or its length does not match
    """
    if not isinstance(text, str) or not text:
        raise InvalidReference(str(text), "empty identifier")

    try:
        raw = base58.b58decode(text)
    except ValueError as e:
        raise InvalidReference(text, f"not base58: {e}") from e

    if len(raw) < 2:
        raise InvalidReference(text, "multihash is too short")
    if raw[0] not in HASH_CODES:
        raise InvalidReference(text, f"unrecognized hash function code 0x{raw[0]:02x}")

    try:
        mh = pymultihash.decode(raw)
    except ValueError as e:
        raise InvalidReference(text, str(e)) from e

    func = HASH_CODES[mh.func.value]
    if len(mh.digest) != func.length:
        raise InvalidReference(
            text, f"declared length {len(mh.digest)} does not match {func.name} ({func.length})"
        )

    # Leading zero bytes make base58 non-unique; only the canonical form is accepted
    canonical = base58.b58encode(raw).decode("ascii")
    if canonical != text:
        raise InvalidReference(text, "non-canonical base58 encoding")

    return ContentReference(hash_function=func.name, digest=mh.digest, text=text)


def is_valid(text: str) -> bool:
    """Return True if `text` is a valid base58 multihash."""
    try:
        parse(text)
        return True
    except InvalidReference as e:
        logger.debug(str(e))
        return False
