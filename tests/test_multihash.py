"""
Tests for alephoracle/multihash.py
"""

import hashlib

import base58
import multihash as pymultihash
import pytest

from alephoracle import multihash
from alephoracle.errors import InvalidReference
from alephoracle.multihash import ContentReference


# ============================================================================
# TEST DATA
# ============================================================================

SAMPLE_PAYLOADS = [
    b"",
    b"hello world",
    b"\x00\x01\x02\xff" * 100,
    "statement body ☃".encode("utf-8"),
]


def b58(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


# ============================================================================
# DIGEST TESTS
# ============================================================================

class TestDigestOf:
    """Tests for digest_of."""

    def test_sha256_layout(self):
        """Multihash is code 0x12, length 32, then the sha256 digest."""
        ref = multihash.digest_of(b"hello world")
        raw = base58.b58decode(ref.text)

        assert raw[0] == 0x12
        assert raw[1] == 32
        assert raw[2:] == hashlib.sha256(b"hello world").digest()
        assert ref.digest == raw[2:]
        assert ref.hash_function == "sha2-256"

    def test_sha256_text_prefix(self):
        """sha2-256 multihashes start with Qm in base58."""
        assert multihash.digest_of(b"anything").text.startswith("Qm")

    def test_deterministic(self):
        assert multihash.digest_of(b"abc") == multihash.digest_of(b"abc")

    def test_different_input_different_reference(self):
        assert multihash.digest_of(b"abc") != multihash.digest_of(b"abd")

    def test_sha512(self):
        ref = multihash.digest_of(b"abc", "sha2-512")
        assert ref.hash_function == "sha2-512"
        assert len(ref.digest) == 64
        assert multihash.parse(ref.text) == ref

    def test_unknown_function(self):
        with pytest.raises(InvalidReference):
            multihash.digest_of(b"abc", "md5")

    def test_str_is_text(self):
        ref = multihash.digest_of(b"abc")
        assert str(ref) == ref.text

    def test_multihash_property(self):
        ref = multihash.digest_of(b"abc")
        assert b58(ref.multihash) == ref.text

    @pytest.mark.parametrize("name", sorted(multihash.HASH_FUNCTIONS))
    def test_matches_pymultihash(self, name):
        func = multihash.HASH_FUNCTIONS[name].func
        ref = multihash.digest_of(b"order statement", name)

        expected = pymultihash.digest(b"order statement", func)
        assert ref.multihash == expected.encode()
        assert pymultihash.decode(base58.b58decode(ref.text)) == expected

    def test_digest_file(self, tmp_path):
        path = tmp_path / "body.bin"
        data = b"x" * (multihash.CHUNK_SIZE * 2 + 17)
        path.write_bytes(data)

        assert multihash.digest_file(path) == multihash.digest_of(data)


# ============================================================================
# PARSE TESTS
# ============================================================================

class TestParse:
    """Tests for parse and is_valid."""

    @pytest.mark.parametrize("payload", SAMPLE_PAYLOADS)
    def test_round_trip(self, payload):
        ref = multihash.digest_of(payload)
        assert multihash.parse(ref.text) == ref

    def test_reference_is_immutable(self):
        ref = multihash.digest_of(b"abc")
        with pytest.raises(AttributeError):
            ref.text = "other"

    def test_empty_string(self):
        with pytest.raises(InvalidReference):
            multihash.parse("")
        assert multihash.is_valid("") is False

    def test_non_base58_characters(self):
        assert multihash.is_valid("not-a-hash") is False
        assert multihash.is_valid("QmO0Il" + "1" * 40) is False

    def test_truncated_digest(self):
        text = multihash.digest_of(b"abc").text
        with pytest.raises(InvalidReference):
            multihash.parse(text[:-4])
        assert multihash.is_valid(text[:-1]) is False

    def test_extended_digest(self):
        raw = multihash.digest_of(b"abc").multihash + b"\x00"
        assert multihash.is_valid(b58(raw)) is False

    def test_unrecognized_hash_code(self):
        digest = hashlib.sha256(b"abc").digest()
        text = b58(bytes([0x55, 32]) + digest)
        with pytest.raises(InvalidReference, match="unrecognized"):
            multihash.parse(text)
        assert multihash.is_valid(text) is False

    def test_declared_length_mismatch(self):
        text = b58(bytes([0x12, 16]) + b"\x01" * 16)
        with pytest.raises(InvalidReference, match="declared length"):
            multihash.parse(text)

    def test_only_prefix(self):
        assert multihash.is_valid(b58(bytes([0x12]))) is False

    def test_non_string(self):
        assert multihash.is_valid(None) is False

    def test_valid(self):
        assert multihash.is_valid(multihash.digest_of(b"abc").text) is True

    def test_parse_builds_reference(self):
        digest = hashlib.sha1(b"abc").digest()
        text = b58(bytes([0x11, 20]) + digest)
        ref = multihash.parse(text)
        assert ref == ContentReference("sha1", digest, text)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
