# protocol.py
#
# Frame and tone layout of the acoustic link. Five user knobs (frequency
# spacing, start bin, frames per byte group, bytes per group, volume) plus
# the two device sample rates fully determine where every tone lives and
# how many frames each part of a transmission takes.
#
# Every carrier sits exactly on an FFT bin of the receiver's frame, so a
# frame holds a whole number of cycles of every tone and demodulation reads
# clean bin energy without leakage.

import enum
import logging
import math
from dataclasses import dataclass

from .errors import ConfigurationError

_logger = logging.getLogger(__name__)

# --- Configuration ---
K_BASE_SAMPLE_RATE = 48000        # Samples per second the devices are opened at
K_MAX_SAMPLES_PER_FRAME = 1024    # Samples per analysis frame (FFT size)
K_MAX_DATA_BITS = 256             # Tone slots available, data bits plus marker bits
K_MAX_DATA_SIZE = 256             # Largest encoded (post-ECC) session in bytes
K_MAX_LENGTH = 140                # Largest payload accepted by init()
K_MAX_SPECTRUM_HISTORY = 4        # Frames averaged for the running spectrum
K_MAX_RECORDED_FRAMES = 64 * 10   # Frames the receiver can hold for one transmission
K_DEFAULT_FIXED_LENGTH = 82       # Payload size in FixedLength mode
K_DEFAULT_ECC_BYTES = 32          # Payload parity bytes in FixedLength mode

N_BITS_IN_MARKER = 16             # Reserved marker slots above the data band
N_MARKER_FRAMES = 16
N_POST_MARKER_FRAMES = 8
N_RAMP_FRAMES_BEGIN = 2
N_RAMP_FRAMES_END = 2
N_RAMP_FRAMES_BLEND = 1

K_MARKER_THRESHOLD = 3.0          # Marker bin must beat its pair and the floor by this ratio
K_MARKER_LOCK_FRAMES = 2          # Consecutive marker matches needed to lock
K_STEPS_PER_FRAME = 16            # Alignment search resolution
K_ANALYSIS_SPREAD = 4             # Alignment candidates on each side of the estimate


class TxMode(enum.IntEnum):
    FIXED_LENGTH = 0
    VARIABLE_LENGTH = 1


# Presets selectable from the command line: (freq_delta, freq_start,
# frames_per_tx, bytes_per_tx, volume)
TX_PROTOCOLS = {
    0: ("Normal", (1, 40, 9, 3, 50)),
    1: ("Fast", (1, 40, 6, 3, 50)),
    2: ("Fastest", (1, 40, 3, 3, 50)),
    3: ("Ultrasonic", (1, 320, 9, 3, 50)),
}
DEFAULT_TX_PROTOCOL = 1


def _clamp(name, value, lo, hi):
    clamped = min(max(int(value), lo), hi)
    if clamped != value:
        _logger.warning(f"{name}={value} out of range, using {clamped}")
    return clamped


@dataclass(frozen=True)
class ProtocolParameters:
    """Immutable layout derived from the user knobs and the device rates.

    Build instances with `ProtocolParameters.derive()`, which validates and
    clamps the knobs. Two derivations from the same inputs compare equal.
    """

    freq_delta: int
    freq_start: int
    frames_per_tx: int
    bytes_per_tx: int
    ecc_bytes_per_tx: int
    volume: int
    sample_rate_in: float
    sample_rate_out: float
    samples_per_frame: int
    samples_per_frame_out: int
    hz_per_frame: float
    bit1_bins: tuple
    bit0_bins: tuple
    n_marker_frames: int = N_MARKER_FRAMES
    n_post_marker_frames: int = N_POST_MARKER_FRAMES
    n_ramp_frames_begin: int = N_RAMP_FRAMES_BEGIN
    n_ramp_frames_end: int = N_RAMP_FRAMES_END
    n_ramp_frames_blend: int = N_RAMP_FRAMES_BLEND
    n_bits_in_marker: int = N_BITS_IN_MARKER

    @classmethod
    def derive(cls, freq_delta, freq_start, frames_per_tx, bytes_per_tx, volume,
               sample_rate_in=K_BASE_SAMPLE_RATE, sample_rate_out=K_BASE_SAMPLE_RATE,
               samples_per_frame=K_MAX_SAMPLES_PER_FRAME, ecc_bytes_per_tx=K_DEFAULT_ECC_BYTES):
        if not 0 < samples_per_frame <= K_MAX_SAMPLES_PER_FRAME:
            raise ConfigurationError(
                f"samples_per_frame must be in 1..{K_MAX_SAMPLES_PER_FRAME}, got {samples_per_frame}")
        if sample_rate_in <= 0 or sample_rate_out <= 0:
            raise ConfigurationError("Sample rates must be positive")

        max_bytes_per_tx = (K_MAX_DATA_BITS - N_BITS_IN_MARKER) // 8
        freq_delta = _clamp("freq_delta", freq_delta, 1, samples_per_frame)
        freq_start = _clamp("freq_start", freq_start, 1, samples_per_frame)
        frames_per_tx = _clamp("frames_per_tx", frames_per_tx, 1, K_MAX_RECORDED_FRAMES)
        bytes_per_tx = _clamp("bytes_per_tx", bytes_per_tx, 1, max_bytes_per_tx)
        volume = _clamp("volume", volume, 0, 100)
        ecc_bytes_per_tx = _clamp("ecc_bytes_per_tx", ecc_bytes_per_tx, 2, 255 - K_DEFAULT_FIXED_LENGTH)
        ecc_bytes_per_tx -= ecc_bytes_per_tx % 2

        n_slots = 8 * bytes_per_tx + N_BITS_IN_MARKER
        bit1_bins = tuple(freq_start + 2 * freq_delta * k for k in range(n_slots))
        bit0_bins = tuple(b + freq_delta for b in bit1_bins)

        hz_per_frame = sample_rate_in / samples_per_frame
        top_bin = bit0_bins[-1]
        if top_bin >= samples_per_frame // 2:
            raise ConfigurationError(
                f"Tone layout needs bin {top_bin}, above the last usable bin "
                f"{samples_per_frame // 2 - 1} of a {samples_per_frame}-sample frame")
        if top_bin * hz_per_frame >= sample_rate_out / 2:
            raise ConfigurationError(
                f"Highest tone {top_bin * hz_per_frame:.1f} Hz exceeds the Nyquist "
                f"limit of the {sample_rate_out} Hz output")

        return cls(
            freq_delta=freq_delta,
            freq_start=freq_start,
            frames_per_tx=frames_per_tx,
            bytes_per_tx=bytes_per_tx,
            ecc_bytes_per_tx=ecc_bytes_per_tx,
            volume=volume,
            sample_rate_in=float(sample_rate_in),
            sample_rate_out=float(sample_rate_out),
            samples_per_frame=samples_per_frame,
            samples_per_frame_out=int(round(samples_per_frame * sample_rate_out / sample_rate_in)),
            hz_per_frame=hz_per_frame,
            bit1_bins=bit1_bins,
            bit0_bins=bit0_bins,
            n_ramp_frames_blend=N_RAMP_FRAMES_BLEND if frames_per_tx > 1 else 0,
        )

    # --- Derived quantities ---

    @property
    def n_data_bits(self):
        return 8 * self.bytes_per_tx

    @property
    def n_slots(self):
        return len(self.bit1_bins)

    @property
    def freq_delta_hz(self):
        return self.freq_delta * self.hz_per_frame

    @property
    def freq_start_hz(self):
        return self.freq_start * self.hz_per_frame

    @property
    def send_volume(self):
        return self.volume / 100.0

    @property
    def data_freqs_hz(self):
        """Carrier of the "one" tone of every data slot."""
        return tuple(b * self.hz_per_frame for b in self.bit1_bins[:self.n_data_bits])

    @property
    def marker_slots(self):
        return range(self.n_data_bits, self.n_slots)

    def marker_bins(self, end=False):
        """Bins that carry energy (on) and stay quiet (off) in a marker frame.

        The start marker sends the "one" tone on even marker slots and the
        "zero" tone on odd ones; the end marker is the inverted pattern.
        """
        on, off = [], []
        for i, slot in enumerate(self.marker_slots):
            one = (i % 2 == 0) != end
            on.append(self.bit1_bins[slot] if one else self.bit0_bins[slot])
            off.append(self.bit0_bins[slot] if one else self.bit1_bins[slot])
        return on, off

    def n_groups(self, n_bytes):
        return math.ceil(n_bytes / self.bytes_per_tx)

    def frames_for_bytes(self, n_bytes):
        """Total frames of a transmission carrying `n_bytes` encoded bytes."""
        return (self.n_marker_frames + self.n_ramp_frames_begin
                + self.n_groups(n_bytes) * self.frames_per_tx
                + self.n_ramp_frames_end + self.n_post_marker_frames)

    def fits_recording(self, n_bytes):
        """Whether a receiver can hold everything up to the end marker."""
        budget = K_MAX_RECORDED_FRAMES - K_MAX_SPECTRUM_HISTORY
        return self.frames_for_bytes(n_bytes) - self.n_post_marker_frames <= budget
