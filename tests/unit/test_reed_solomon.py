import numpy as np
import pytest

from tonelink.ecc import (
    LENGTH_ECC_BYTES,
    ReedSolomonCodec,
    ecc_bytes_for_length,
)
from tonelink.errors import UncorrectableError


def corrupt(codeword, n_errors, seed):
    """Flip `n_errors` distinct bytes of `codeword` to different values."""
    rng = np.random.default_rng(seed)
    data = bytearray(codeword)
    for pos in rng.choice(len(data), size=n_errors, replace=False):
        data[pos] ^= int(rng.integers(1, 256))
    return bytes(data)


class TestReedSolomon:
    """Test cases for the Reed-Solomon codec wrapper."""

    def test_encode_appends_parity(self):
        """Test that encoding appends exactly n_ecc_bytes parity bytes."""
        codec = ReedSolomonCodec(8)
        payload = b"Hello World"
        codeword = codec.encode(payload)

        assert isinstance(codeword, bytes)
        assert len(codeword) == len(payload) + 8
        assert codeword.startswith(payload)

    def test_decode_clean_codeword(self):
        """Test decoding a codeword without errors."""
        codec = ReedSolomonCodec(4)
        assert codec.decode(codec.encode(b"hello")) == b"hello"

    @pytest.mark.parametrize("n_errors", [1, 4, 8])
    def test_decode_corrects_up_to_half_parity(self, n_errors):
        """Test that up to n_ecc_bytes // 2 byte errors are corrected."""
        codec = ReedSolomonCodec(16)
        payload = bytes(range(40))
        received = corrupt(codec.encode(payload), n_errors, seed=n_errors)

        assert codec.decode(received) == payload

    def test_decode_fails_beyond_half_parity(self):
        """Test that one error past the correction limit is reported, not hidden."""
        codec = ReedSolomonCodec(16)
        received = corrupt(codec.encode(bytes(range(40))), 9, seed=1234)

        with pytest.raises(UncorrectableError):
            codec.decode(received)

    def test_length_field_codec(self):
        """Test the one-byte length field with its two parity bytes."""
        codec = ReedSolomonCodec(LENGTH_ECC_BYTES)
        codeword = codec.encode(bytes([140]))
        assert len(codeword) == 3

        damaged = bytes([codeword[0] ^ 0x55]) + codeword[1:]
        assert codec.decode(damaged) == bytes([140])

    def test_invalid_parity_count(self):
        """Test that a codec without parity bytes is refused."""
        with pytest.raises(ValueError):
            ReedSolomonCodec(0)

    @pytest.mark.parametrize("length,expected", [
        (1, 2), (3, 2), (4, 4), (9, 4), (10, 4), (15, 6), (20, 8), (140, 56),
    ])
    def test_ecc_bytes_for_length(self, length, expected):
        """Test the parity budget of variable-length payloads."""
        assert ecc_bytes_for_length(length) == expected

    def test_ecc_bytes_are_even(self):
        """Test that every payload length gets an even parity count."""
        assert all(ecc_bytes_for_length(n) % 2 == 0 for n in range(1, 141))
