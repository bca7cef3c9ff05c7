# ecc.py
#
# Reed-Solomon forward error correction. The arithmetic lives in reedsolo;
# this module only pins down the contract the engine relies on:
#   encode(payload) -> payload + n_ecc_bytes parity bytes
#   decode(codeword) -> payload, or UncorrectableError when more than
#   n_ecc_bytes // 2 bytes are wrong.

from reedsolo import RSCodec, ReedSolomonError

from .errors import UncorrectableError

LENGTH_ECC_BYTES = 2  # Parity bytes protecting the one-byte length field


def ecc_bytes_for_length(length):
    """Number of parity bytes used for a variable-length payload of `length` bytes."""
    if length < 4:
        return 2
    return max(4, 2 * (length // 5))


class ReedSolomonCodec:
    """One Reed-Solomon instance with a fixed number of parity bytes."""

    def __init__(self, n_ecc_bytes):
        if n_ecc_bytes < 1:
            raise ValueError(f"n_ecc_bytes must be positive, got {n_ecc_bytes}")
        self.n_ecc_bytes = n_ecc_bytes
        self._rs = RSCodec(n_ecc_bytes)

    def encode(self, payload):
        return bytes(self._rs.encode(bytearray(payload)))

    def decode(self, codeword):
        try:
            # reedsolo returns (message, message+ecc[, errata positions])
            decoded = self._rs.decode(bytearray(codeword))[0]
        except ReedSolomonError as e:
            raise UncorrectableError(str(e)) from e
        return bytes(decoded)

    def __repr__(self):
        return f"ReedSolomonCodec(n_ecc_bytes={self.n_ecc_bytes})"
