import numpy as np
import pytest

from tonelink.errors import ConfigurationError
from tonelink.modem import DataRxTx
from tonelink.protocol import (
    ProtocolParameters,
    TX_PROTOCOLS,
    K_MAX_DATA_BITS,
    K_MAX_SAMPLES_PER_FRAME,
    N_BITS_IN_MARKER,
)
from tonelink.tones import ToneTable


class TestProtocolParameters:
    """Test cases for deriving the tone layout from the user knobs."""

    def test_fast_protocol_layout(self):
        """Test the bin layout of the default 'Fast' preset."""
        params = ProtocolParameters.derive(1, 40, 6, 3, 50)

        assert params.hz_per_frame == pytest.approx(48000 / 1024)
        assert params.n_data_bits == 24
        assert params.n_slots == 24 + N_BITS_IN_MARKER
        assert params.bit1_bins[0] == 40
        assert params.bit0_bins[0] == 41
        assert params.bit1_bins[1] == 42
        assert params.freq_start_hz == pytest.approx(40 * 48000 / 1024)
        assert params.freq_delta_hz == pytest.approx(48000 / 1024)
        assert len(params.data_freqs_hz) == 24
        assert params.data_freqs_hz[1] == pytest.approx(42 * 48000 / 1024)

    def test_bins_are_integers_and_distinct(self):
        """Test that every carrier sits on its own integer bin."""
        params = ProtocolParameters.derive(2, 30, 6, 4, 50)
        bins = params.bit1_bins + params.bit0_bins

        assert all(isinstance(b, int) for b in bins)
        assert len(set(bins)) == len(bins)
        assert min(bins) >= params.freq_start

    def test_marker_bins_do_not_collide_with_data_bins(self):
        """Test that the marker's reserved bins sit outside the data band."""
        params = ProtocolParameters.derive(1, 40, 6, 3, 50)
        n = params.n_data_bits
        data_bins = set(params.bit1_bins[:n]) | set(params.bit0_bins[:n])

        for end in (False, True):
            on, off = params.marker_bins(end)
            assert len(on) == len(off) == N_BITS_IN_MARKER
            assert not data_bins & set(on)
            assert not data_bins & set(off)

    def test_end_marker_is_inverted_start_marker(self):
        """Test that the end marker swaps the on/off bins of the start marker."""
        params = ProtocolParameters.derive(1, 40, 6, 3, 50)
        start_on, start_off = params.marker_bins(end=False)
        end_on, end_off = params.marker_bins(end=True)

        assert start_on == end_off
        assert start_off == end_on

    def test_derivation_is_idempotent(self):
        """Test that identical inputs give bit-identical layouts and tone tables."""
        first = ProtocolParameters.derive(1, 40, 6, 3, 50)
        second = ProtocolParameters.derive(1, 40, 6, 3, 50)

        assert first == second
        assert first.bit1_bins == second.bit1_bins
        np.testing.assert_array_equal(ToneTable(first).bit1_amplitude, ToneTable(second).bit1_amplitude)
        np.testing.assert_array_equal(ToneTable(first).bit0_amplitude, ToneTable(second).bit0_amplitude)

    def test_volume_is_clamped(self):
        """Test that out-of-range volume is clamped instead of rejected."""
        assert ProtocolParameters.derive(1, 40, 6, 3, 500).volume == 100
        assert ProtocolParameters.derive(1, 40, 6, 3, -5).volume == 0
        assert ProtocolParameters.derive(1, 40, 6, 3, 500).send_volume == 1.0

    def test_small_knobs_are_clamped(self):
        """Test that zero or negative knobs are raised to their minimum."""
        params = ProtocolParameters.derive(0, 0, 0, 0, 50)

        assert params.freq_delta == 1
        assert params.freq_start == 1
        assert params.frames_per_tx == 1
        assert params.bytes_per_tx == 1
        assert params.n_ramp_frames_blend == 0

    def test_bytes_per_tx_never_exceeds_data_bits(self):
        """Test that the data bits plus marker bits always fit the slot ceiling."""
        params = ProtocolParameters.derive(1, 1, 6, 20, 50)
        assert params.n_data_bits + N_BITS_IN_MARKER <= K_MAX_DATA_BITS

        with pytest.raises(ConfigurationError):
            # Clamped to 30 bytes, whose 256 slots no longer fit below Nyquist
            ProtocolParameters.derive(1, 1, 6, 31, 50)

    def test_layout_above_frame_nyquist_rejected(self):
        """Test that a layout needing bins past samples_per_frame / 2 is rejected."""
        with pytest.raises(ConfigurationError):
            ProtocolParameters.derive(6, 400, 6, 3, 50)

    def test_layout_above_output_nyquist_rejected(self):
        """Test that tones above half the output sample rate are rejected."""
        with pytest.raises(ConfigurationError):
            ProtocolParameters.derive(1, 40, 6, 3, 50, sample_rate_out=8000)

    def test_invalid_frame_size_rejected(self):
        """Test that frames larger than the FFT ceiling are rejected."""
        with pytest.raises(ConfigurationError):
            ProtocolParameters.derive(1, 40, 6, 3, 50, samples_per_frame=K_MAX_SAMPLES_PER_FRAME * 2)

    def test_ecc_bytes_clamped_to_even(self):
        """Test that the fixed-length parity count is kept even and in range."""
        assert ProtocolParameters.derive(1, 40, 6, 3, 50, ecc_bytes_per_tx=7).ecc_bytes_per_tx == 6
        assert ProtocolParameters.derive(1, 40, 6, 3, 50, ecc_bytes_per_tx=0).ecc_bytes_per_tx == 2
        assert ProtocolParameters.derive(1, 40, 6, 3, 50, ecc_bytes_per_tx=1000).ecc_bytes_per_tx == 172

    def test_output_frame_follows_output_rate(self):
        """Test that output frames span the same time as input frames."""
        params = ProtocolParameters.derive(1, 40, 6, 3, 50, sample_rate_in=48000, sample_rate_out=44100)
        assert params.samples_per_frame_out == round(1024 * 44100 / 48000)

    def test_frames_for_bytes(self):
        """Test the frame budget of a transmission."""
        params = ProtocolParameters.derive(1, 40, 6, 3, 50)
        # 16 marker + 2 ramp + 4 groups * 6 + 2 ramp + 8 post-marker
        assert params.frames_for_bytes(12) == 52
        assert params.fits_recording(12)

    @pytest.mark.parametrize("protocol", sorted(TX_PROTOCOLS))
    def test_presets_are_valid(self, protocol):
        """Test that every command-line preset derives without errors."""
        _, knobs = TX_PROTOCOLS[protocol]
        params = ProtocolParameters.derive(*knobs)
        assert params.n_data_bits == 24


class TestEngineParameters:
    """Test cases for set_parameters() on the engine."""

    def test_rejected_parameters_keep_previous_layout(self):
        """Test that a rejected call leaves the layout and tone table intact."""
        engine = DataRxTx()
        engine.set_parameters(1, 40, 6, 3, 50)
        engine.init(5, b"hello")
        before = engine.params
        table = engine.tone_table.bit1_amplitude.copy()

        with pytest.raises(ConfigurationError):
            engine.set_parameters(1, 1, 6, 31, 50)

        assert engine.params is before
        np.testing.assert_array_equal(engine.tone_table.bit1_amplitude, table)

    def test_set_parameters_discards_session(self):
        """Test that changing parameters drops the transmission in flight."""
        engine = DataRxTx()
        engine.init(5, b"hello")
        assert engine.get_has_data()

        engine.set_parameters(1, 40, 9, 3, 50)
        assert not engine.get_has_data()

    def test_ecc_bytes_survive_later_calls(self):
        """Test that the fixed-length parity count is kept when omitted."""
        engine = DataRxTx()
        engine.set_parameters(1, 40, 6, 3, 50, ecc_bytes_per_tx=16)
        engine.set_parameters(1, 40, 9, 3, 50)
        assert engine.params.ecc_bytes_per_tx == 16

    def test_tone_table_follows_parameters(self):
        """Test that the tone table is rebuilt as soon as the parameters change."""
        engine = DataRxTx()
        engine.set_parameters(1, 40, 6, 3, 50)

        assert engine.tone_table is not None
        assert engine.tone_table.params is engine.params
        assert engine.tone_table.bit1_amplitude.shape == (engine.params.n_slots, 1024)

    def test_small_frame_gets_fitting_defaults(self):
        """Test that an engine with a short frame starts from a layout that fits it."""
        engine = DataRxTx(samples_per_frame=512)

        assert engine.params.freq_delta == 1
        assert engine.params.bit0_bins[-1] < 256
        assert engine.tone_table.bit1_amplitude.shape[1] == 512

    def test_initial_parameters_argument(self):
        """Test that the first layout can be chosen at construction time."""
        engine = DataRxTx(samples_per_frame=256, parameters=(1, 10, 3, 2, 50))

        assert engine.params.freq_start == 10
        assert engine.params.frames_per_tx == 3
