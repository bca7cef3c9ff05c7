# tones.py
#
# Precomputed one-frame waveforms for every tone slot. The transmitter sums
# rows of these tables instead of evaluating sines per frame.

import numpy as np


def _slot_phase(k, n_slots):
    # Quadratic phase spread keeps the crest factor of the summed tones low
    return np.pi * k * k / n_slots


class ToneTable:
    """Per-slot "bit=1" / "bit=0" frames at the output rate.

    Row k of `bit1_amplitude` holds the slot's "one" tone, row k of
    `bit0_amplitude` its "zero" tone, each scaled by the send volume and
    exactly `samples_per_frame_out` samples long. `marker_reference` is one
    start-marker frame at the input rate, used by the receiver to find the
    sample phase of a captured marker.
    """

    def __init__(self, params):
        self.params = params
        n_slots = params.n_slots
        phases = np.array([_slot_phase(k, n_slots) for k in range(n_slots)])

        t_out = np.arange(params.samples_per_frame_out) / params.sample_rate_out
        self.bit1_amplitude = self._synthesize(params.bit1_bins, phases, t_out) * params.send_volume
        self.bit0_amplitude = self._synthesize(params.bit0_bins, phases, t_out) * params.send_volume

        self.marker_start = self._marker_frame(end=False)
        self.marker_end = self._marker_frame(end=True)

        t_in = np.arange(params.samples_per_frame) / params.sample_rate_in
        ref1 = self._synthesize(params.bit1_bins, phases, t_in)
        ref0 = self._synthesize(params.bit0_bins, phases, t_in)
        self.marker_reference = self._marker_sum(ref1, ref0, end=False)

    def _synthesize(self, bins, phases, t):
        freqs = np.asarray(bins, dtype=np.float64) * self.params.hz_per_frame
        return np.sin(2 * np.pi * freqs[:, None] * t[None, :] + phases[:, None])

    def _marker_sum(self, ones, zeros, end):
        frame = np.zeros(ones.shape[1])
        for i, slot in enumerate(self.params.marker_slots):
            one = (i % 2 == 0) != end
            frame += ones[slot] if one else zeros[slot]
        return frame / self.params.n_bits_in_marker

    def _marker_frame(self, end):
        return self._marker_sum(self.bit1_amplitude, self.bit0_amplitude, end)

    def data_frame(self, bits):
        """Sum the tone of every data slot according to `bits` (length n_data_bits)."""
        n = self.params.n_data_bits
        bits = np.asarray(bits, dtype=bool)
        frame = np.where(bits[:, None], self.bit1_amplitude[:n], self.bit0_amplitude[:n]).sum(axis=0)
        return frame / n
