# modem.py
#
# Send and receive short payloads through sound.
#
# Every frame carries one group of bytes: each bit owns a pair of tones and
# exactly one tone of the pair sounds, the "one" tone for a set bit and the
# "zero" tone otherwise. A transmission is a start marker, the Reed-Solomon
# protected byte groups (each repeated frames_per_tx times) and an end
# marker. The receiver averages frames coherently, locks onto the start
# marker, records until the end marker and then searches for the exact
# frame alignment that makes the error correction succeed.
#
# The engine never touches an audio device. The host hands it a sink for
# send() and a source for receive() and polls both once per tick.

import enum
import logging
import time

import numpy as np

from .ecc import LENGTH_ECC_BYTES, ReedSolomonCodec, ecc_bytes_for_length
from .errors import ConfigurationError, UncorrectableError
from .protocol import (
    K_ANALYSIS_SPREAD,
    K_BASE_SAMPLE_RATE,
    K_DEFAULT_ECC_BYTES,
    K_DEFAULT_FIXED_LENGTH,
    K_MARKER_LOCK_FRAMES,
    K_MARKER_THRESHOLD,
    K_MAX_LENGTH,
    K_MAX_RECORDED_FRAMES,
    K_MAX_SAMPLES_PER_FRAME,
    K_MAX_SPECTRUM_HISTORY,
    K_STEPS_PER_FRAME,
    N_BITS_IN_MARKER,
    ProtocolParameters,
    TxMode,
)
from .tones import ToneTable

_logger = logging.getLogger(__name__)

_SAMPLE_DTYPES = {2: np.int16, 4: np.float32}

# Knobs used until the host calls set_parameters()
DEFAULT_PARAMETERS = (6, 40, 6, 2, 10)


def default_parameters(samples_per_frame):
    """DEFAULT_PARAMETERS, packed down to single-bin spacing when a small frame cannot hold them."""
    freq_delta, freq_start, frames_per_tx, bytes_per_tx, volume = DEFAULT_PARAMETERS
    n_slots = 8 * bytes_per_tx + N_BITS_IN_MARKER
    if freq_start + (2 * n_slots - 1) * freq_delta >= samples_per_frame // 2:
        freq_delta = 1
        freq_start = max(1, min(freq_start, samples_per_frame // 2 - 2 * n_slots))
    return freq_delta, freq_start, frames_per_tx, bytes_per_tx, volume


class RxState(enum.Enum):
    LISTENING = "listening"
    MARKER_LOCKED = "marker_locked"
    RECORDING = "recording"
    ANALYZING = "analyzing"


def samples_to_bytes(frame, sample_size):
    """Encode float samples in [-1, 1] as raw int16 or float32 bytes."""
    if sample_size == 2:
        return np.clip(np.round(frame * 32767.0), -32768, 32767).astype(np.int16).tobytes()
    return np.asarray(frame, dtype=np.float32).tobytes()


def bytes_to_samples(data, sample_size):
    """Decode raw int16 or float32 bytes into float32 samples."""
    data = bytes(data)
    data = data[:len(data) - len(data) % sample_size]
    samples = np.frombuffer(data, dtype=_SAMPLE_DTYPES[sample_size]).astype(np.float32)
    if sample_size == 2:
        samples /= 32768.0
    return samples


class DataRxTx:
    """Half-duplex acoustic modem engine.

    One instance owns every buffer of one link: the derived protocol
    layout, the tone table, the Reed-Solomon codecs, the transmit session
    and the receive session. It is not thread-safe; the host serializes
    init()/send()/receive() behind a single lock.
    """

    def __init__(self, sample_rate_in=K_BASE_SAMPLE_RATE, sample_rate_out=K_BASE_SAMPLE_RATE,
                 samples_per_frame=K_MAX_SAMPLES_PER_FRAME, sample_size_bytes_in=4,
                 sample_size_bytes_out=2, parameters=None):
        for size in (sample_size_bytes_in, sample_size_bytes_out):
            if size not in _SAMPLE_DTYPES:
                raise ConfigurationError(f"Unsupported sample size {size}, expected 2 (int16) or 4 (float32)")

        self.sample_rate_in = sample_rate_in
        self.sample_rate_out = sample_rate_out
        self.samples_per_frame = samples_per_frame
        self.sample_size_bytes_in = sample_size_bytes_in
        self.sample_size_bytes_out = sample_size_bytes_out
        self.tx_mode = TxMode.FIXED_LENGTH

        self.params = None
        self.tone_table = None
        self._rs_length = ReedSolomonCodec(LENGTH_ECC_BYTES)
        self._rs_data = None

        # Tx
        self.text_to_send = b""
        self.encoded_data = b""
        self.send_data_length = 0
        self.data_id = 0
        self.frame_id = 0
        self.has_data = False

        # Rx
        self.rx_data = b""
        self.average_rx_time_ms = 0.0
        self.total_bytes_captured = 0
        self._n_decoded = 0
        self.recorded_amplitude = np.zeros(K_MAX_RECORDED_FRAMES * samples_per_frame, dtype=np.float32)
        self.sample_amplitude_history = np.zeros((K_MAX_SPECTRUM_HISTORY, samples_per_frame), dtype=np.float32)

        if parameters is None:
            parameters = default_parameters(samples_per_frame)
        self.set_parameters(*parameters)

    # --- Configuration ---

    def set_parameters(self, freq_delta, freq_start, frames_per_tx, bytes_per_tx, volume,
                       ecc_bytes_per_tx=None):
        """Derive a new tone layout.

        Out-of-range knobs are clamped. A layout that cannot fit below the
        Nyquist limit raises ConfigurationError and leaves the previous
        layout in force. Any session in flight is discarded.
        """
        if ecc_bytes_per_tx is None:
            ecc_bytes_per_tx = self.params.ecc_bytes_per_tx if self.params else K_DEFAULT_ECC_BYTES
        self.params = ProtocolParameters.derive(
            freq_delta, freq_start, frames_per_tx, bytes_per_tx, volume,
            sample_rate_in=self.sample_rate_in,
            sample_rate_out=self.sample_rate_out,
            samples_per_frame=self.samples_per_frame,
            ecc_bytes_per_tx=ecc_bytes_per_tx,
        )
        self._build_tones()
        self._reset_tx()
        self._reset_rx(clear_history=True)

    def set_tx_mode(self, tx_mode):
        self.tx_mode = TxMode(tx_mode)
        self._reset_tx()
        self._reset_rx(clear_history=True)

    def _build_tones(self):
        p = self.params
        self.tone_table = ToneTable(p)
        self._data_bins1 = np.array(p.bit1_bins[:p.n_data_bits])
        self._data_bins0 = np.array(p.bit0_bins[:p.n_data_bits])
        self._marker_bins = {end: tuple(np.array(b) for b in p.marker_bins(end)) for end in (False, True)}
        self._marker_reference_fft = np.fft.rfft(self.tone_table.marker_reference)

    def _data_codec(self, n_ecc_bytes):
        if self._rs_data is None or self._rs_data.n_ecc_bytes != n_ecc_bytes:
            self._rs_data = ReedSolomonCodec(n_ecc_bytes)
        return self._rs_data

    # --- Tx ---

    def init(self, text_length, text):
        """Start a new transmission of the first `text_length` bytes of `text`.

        Any session already in flight is dropped. An empty payload only
        resets the transmitter.
        """
        self._reset_tx()
        if isinstance(text, str):
            text = text.encode("utf-8")
        payload = bytes(text)[:max(0, min(text_length, K_MAX_LENGTH))]
        if not payload:
            return

        p = self.params
        if self.tx_mode == TxMode.FIXED_LENGTH:
            if len(payload) > K_DEFAULT_FIXED_LENGTH:
                _logger.warning(f"Payload truncated from {len(payload)} to {K_DEFAULT_FIXED_LENGTH} bytes")
                payload = payload[:K_DEFAULT_FIXED_LENGTH]
            encoded = self._data_codec(p.ecc_bytes_per_tx).encode(payload.ljust(K_DEFAULT_FIXED_LENGTH, b"\0"))
            if not p.fits_recording(len(encoded)):
                raise ConfigurationError(
                    f"A fixed-length transmission needs {p.frames_for_bytes(len(encoded))} frames, "
                    f"more than a receiver can record")
            self.send_data_length = K_DEFAULT_FIXED_LENGTH
        else:
            payload = self._truncate_to_fit(payload)
            n_ecc = ecc_bytes_for_length(len(payload))
            encoded = (self._rs_length.encode(bytes([len(payload)]))
                       + self._data_codec(n_ecc).encode(payload))
            self.send_data_length = len(payload)

        self.text_to_send = payload
        self.encoded_data = encoded
        self._tx_total_frames = p.frames_for_bytes(len(encoded))
        self.has_data = True
        _logger.debug(f"Tx session: {len(payload)} payload bytes, {len(encoded)} encoded bytes, "
                      f"{self._tx_total_frames} frames")

    def _truncate_to_fit(self, payload):
        n = len(payload)
        while n > 0 and not self.params.fits_recording(LENGTH_ECC_BYTES + 1 + n + ecc_bytes_for_length(n)):
            n -= 1
        if n == 0:
            raise ConfigurationError("Current parameters leave no room for a single payload byte")
        if n < len(payload):
            _logger.warning(f"Payload truncated from {len(payload)} to {n} bytes to fit the receive buffer")
        return payload[:n]

    def send(self, queue_audio):
        """Queue the next frame of the current session through `queue_audio(bytes)`."""
        if not self.has_data:
            return
        frame = self._tx_frame(self.frame_id)
        self.frame_id += 1
        queue_audio(samples_to_bytes(frame, self.sample_size_bytes_out))
        if self.frame_id >= self._tx_total_frames:
            _logger.debug(f"Tx session complete after {self.frame_id} frames")
            self._reset_tx()

    def _tx_frame(self, f):
        p = self.params
        tones = self.tone_table
        n_groups = p.n_groups(len(self.encoded_data))
        first_data = p.n_marker_frames + p.n_ramp_frames_begin
        last_data = first_data + n_groups * p.frames_per_tx

        if f < p.n_marker_frames:
            return tones.marker_start
        if f < first_data:
            return self._group_frame(0) * self._ramp(f - p.n_marker_frames, p.n_ramp_frames_begin)
        if f < last_data:
            group, cycle = divmod(f - first_data, p.frames_per_tx)
            self.data_id = group * p.bytes_per_tx
            frame = self._group_frame(group)
            if group > 0 and cycle < p.n_ramp_frames_blend:
                fade = self._ramp(cycle, p.n_ramp_frames_blend)
                frame = fade * frame + (1.0 - fade) * self._group_frame(group - 1)
            return frame
        if f < last_data + p.n_ramp_frames_end:
            fade = self._ramp(f - last_data, p.n_ramp_frames_end)
            return self._group_frame(n_groups - 1) * (1.0 - fade)
        return tones.marker_end

    def _group_frame(self, group):
        p = self.params
        chunk = self.encoded_data[group * p.bytes_per_tx:(group + 1) * p.bytes_per_tx]
        chunk = chunk.ljust(p.bytes_per_tx, b"\0")
        bits = np.unpackbits(np.frombuffer(chunk, dtype=np.uint8), bitorder="little")
        return self.tone_table.data_frame(bits)

    def _ramp(self, index, n_frames):
        """Linear 0..1 envelope for frame `index` of an `n_frames` long ramp."""
        n = self.params.samples_per_frame_out
        return (np.arange(n) + index * n + 1) / float(n_frames * n)

    def _reset_tx(self):
        self.text_to_send = b""
        self.data_id = 0
        self.frame_id = 0
        self.has_data = False
        self._tx_total_frames = 0

    # --- Rx ---

    @property
    def receiving_data(self):
        return self.rx_state in (RxState.MARKER_LOCKED, RxState.RECORDING)

    @property
    def analyzing_data(self):
        return self.rx_state == RxState.ANALYZING

    def receive(self, dequeue_audio):
        """Process at most one frame pulled from `dequeue_audio(max_bytes) -> bytes`."""
        if self.rx_state == RxState.ANALYZING:
            self._analyze_step()
            return

        n_bytes = self.samples_per_frame * self.sample_size_bytes_in
        data = dequeue_audio(n_bytes)
        if not data:
            return
        data = bytes(data)[:n_bytes]
        self.total_bytes_captured += len(data)

        frame = np.zeros(self.samples_per_frame, dtype=np.float32)
        samples = bytes_to_samples(data, self.sample_size_bytes_in)
        frame[:len(samples)] = samples
        self._update_spectrum(frame)

        if self.rx_state == RxState.LISTENING:
            if self._marker_detected(end=False) and self._marker_detected(end=False, current=True):
                self._marker_matches += 1
                if self._marker_matches >= K_MARKER_LOCK_FRAMES:
                    self._lock()
            else:
                self._marker_matches = 0
            return

        self._record(frame)
        if self._marker_detected(end=True):
            _logger.debug(f"End marker after {self.n_recorded_frames} recorded frames")
            self.frames_left_to_record = 0
        if self.frames_left_to_record <= 0:
            self._start_analysis()

    def _update_spectrum(self, frame):
        self.sample_amplitude = frame
        self.sample_amplitude_history[self.history_id] = frame
        self.history_id = (self.history_id + 1) % K_MAX_SPECTRUM_HISTORY
        # Tones repeat exactly every frame, so this average is coherent for the signal
        self.sample_amplitude_average = self.sample_amplitude_history.mean(axis=0)
        self.sample_spectrum = np.abs(np.fft.rfft(self.sample_amplitude_average))
        self.noise_floor = float(self.sample_spectrum[1:].mean())
        self.frame_spectrum = np.abs(np.fft.rfft(frame))
        self.frame_noise_floor = float(self.frame_spectrum[1:].mean())

    def _marker_detected(self, end, current=False):
        """Marker pattern in the averaged spectrum, or in the latest frame alone."""
        if current:
            spectrum, floor = self.frame_spectrum, self.frame_noise_floor
        else:
            spectrum, floor = self.sample_spectrum, self.noise_floor
        on, off = self._marker_bins[end]
        level = spectrum[on]
        return bool(np.all(level > K_MARKER_THRESHOLD * spectrum[off])
                    and np.all(level > K_MARKER_THRESHOLD * floor))

    def _lock(self):
        n = self.samples_per_frame
        # history_id now points at the oldest frame
        order = [(self.history_id + i) % K_MAX_SPECTRUM_HISTORY for i in range(K_MAX_SPECTRUM_HISTORY)]
        self.recorded_amplitude[:K_MAX_SPECTRUM_HISTORY * n] = self.sample_amplitude_history[order].ravel()
        self.n_recorded_frames = K_MAX_SPECTRUM_HISTORY
        self.frames_to_record = self._frames_to_record()
        self.frames_left_to_record = self.frames_to_record
        self._marker_matches = 0
        self.rx_state = RxState.MARKER_LOCKED
        _logger.debug(f"Marker locked, recording up to {self.frames_to_record} frames")

    def _frames_to_record(self):
        p = self.params
        if self.tx_mode == TxMode.FIXED_LENGTH:
            n_bytes = K_DEFAULT_FIXED_LENGTH + p.ecc_bytes_per_tx
        else:
            n_bytes = LENGTH_ECC_BYTES + 1 + K_MAX_LENGTH + ecc_bytes_for_length(K_MAX_LENGTH)
        return min(p.frames_for_bytes(n_bytes), K_MAX_RECORDED_FRAMES - K_MAX_SPECTRUM_HISTORY)

    def _record(self, frame):
        n = self.samples_per_frame
        start = self.n_recorded_frames * n
        self.recorded_amplitude[start:start + n] = frame
        self.n_recorded_frames += 1
        self.frames_left_to_record -= 1
        self.rx_state = RxState.RECORDING

    def _start_analysis(self):
        self.rx_state = RxState.ANALYZING
        self._analysis_start = time.perf_counter()
        marker_end = self._estimate_marker_end()
        if marker_end is None:
            _logger.debug("No start marker edge in the recording, discarding it")
            self._reset_rx()
            return
        step = self.samples_per_frame // K_STEPS_PER_FRAME
        self._candidates = [marker_end]
        for i in range(1, K_ANALYSIS_SPREAD + 1):
            self._candidates += [marker_end - i * step, marker_end + i * step]
        self.frames_to_analyze = len(self._candidates)
        self.frames_left_to_analyze = self.frames_to_analyze

    def _estimate_marker_end(self):
        """Sample index in the recording where the start marker stops."""
        p = self.params
        n = self.samples_per_frame
        step = n // K_STEPS_PER_FRAME
        recorded = self.recorded_amplitude[:self.n_recorded_frames * n]
        span = min(len(recorded), (K_MAX_SPECTRUM_HISTORY + p.n_marker_frames + 2) * n)
        if span < 2 * n:
            return None

        windows = np.lib.stride_tricks.sliding_window_view(recorded[:span], n)[::step]
        spectra = np.abs(np.fft.rfft(windows, axis=1))
        on, _ = self._marker_bins[False]
        level = spectra[:, on].sum(axis=1)
        peak = int(np.argmax(level))
        if level[peak] <= 0:
            return None
        below = np.flatnonzero(level[peak:] < 0.5 * level[peak])
        if len(below) == 0:
            return None
        # The marker level falls linearly over the last frame; half level is mid-frame
        coarse = (peak + int(below[0])) * step + n // 2 - step // 2

        # Exact sample phase from the circular correlation with a reference marker frame
        plateau = recorded[peak * step:peak * step + n]
        corr = np.fft.irfft(np.fft.rfft(plateau) * np.conj(self._marker_reference_fft), n=n)
        phase = (peak * step + int(np.argmax(corr))) % n
        return coarse + (phase - coarse + n // 2) % n - n // 2

    def _analyze_step(self):
        marker_end = self._candidates[self.frames_to_analyze - self.frames_left_to_analyze]
        self.frames_left_to_analyze -= 1
        try:
            payload = self._decode_at(marker_end)
        except UncorrectableError as e:
            _logger.debug(f"Decode failed for alignment {marker_end}: {e}")
            if self.frames_left_to_analyze <= 0:
                _logger.debug("All alignments failed, back to listening")
                self._reset_rx()
            return

        elapsed_ms = (time.perf_counter() - self._analysis_start) * 1000.0
        self._n_decoded += 1
        self.average_rx_time_ms += (elapsed_ms - self.average_rx_time_ms) / self._n_decoded
        self.rx_data = payload
        _logger.info(f"Received {len(payload)} bytes in {elapsed_ms:.1f} ms")
        self._reset_rx()

    def _decode_at(self, marker_end):
        p = self.params
        data_start = marker_end + p.n_ramp_frames_begin * self.samples_per_frame
        if self.tx_mode == TxMode.FIXED_LENGTH:
            codeword = self._read_bytes(data_start, K_DEFAULT_FIXED_LENGTH + p.ecc_bytes_per_tx)
            return self._data_codec(p.ecc_bytes_per_tx).decode(codeword).rstrip(b"\0")

        header = LENGTH_ECC_BYTES + 1
        length = self._rs_length.decode(self._read_bytes(data_start, header))[0]
        if not 0 < length <= K_MAX_LENGTH:
            raise UncorrectableError(f"Implausible payload length {length}")
        n_ecc = ecc_bytes_for_length(length)
        codeword = self._read_bytes(data_start, header + length + n_ecc)[header:]
        return self._data_codec(n_ecc).decode(codeword)

    def _read_bytes(self, data_start, n_bytes):
        """Hard-decide `n_bytes` bytes from the recording, data starting at `data_start`."""
        p = self.params
        n = self.samples_per_frame
        recorded = self.recorded_amplitude[:self.n_recorded_frames * n]
        out = bytearray()
        for group in range(p.n_groups(n_bytes)):
            skip = p.n_ramp_frames_blend if group > 0 else 0
            count = p.frames_per_tx - skip
            first = data_start + (group * p.frames_per_tx + skip) * n
            last = first + count * n
            if first < 0 or last > len(recorded):
                raise UncorrectableError(f"Recording does not cover byte group {group}")
            average = recorded[first:last].reshape(count, n).mean(axis=0)
            spectrum = np.abs(np.fft.rfft(average))
            bits = spectrum[self._data_bins1] > spectrum[self._data_bins0]
            out += np.packbits(bits, bitorder="little").tobytes()
        return bytes(out[:n_bytes])

    def _reset_rx(self, clear_history=False):
        self.rx_state = RxState.LISTENING
        self.frames_to_record = 0
        self.frames_left_to_record = 0
        self.frames_to_analyze = 0
        self.frames_left_to_analyze = 0
        self.n_recorded_frames = 0
        self._marker_matches = 0
        self._candidates = []
        if clear_history:
            self.history_id = 0
            self.sample_amplitude_history.fill(0)
            self.sample_amplitude = np.zeros(self.samples_per_frame, dtype=np.float32)
            self.sample_amplitude_average = np.zeros(self.samples_per_frame, dtype=np.float32)
            self.sample_spectrum = np.zeros(self.samples_per_frame // 2 + 1)
            self.noise_floor = 0.0
            self.frame_spectrum = np.zeros(self.samples_per_frame // 2 + 1)
            self.frame_noise_floor = 0.0

    # --- Queries ---

    def get_rx_data(self):
        return self.rx_data

    def get_has_data(self):
        return self.has_data

    def get_tx_mode(self):
        return self.tx_mode

    def get_average_rx_time_ms(self):
        return self.average_rx_time_ms

    def get_frames_to_record(self):
        return self.frames_to_record

    def get_frames_left_to_record(self):
        return self.frames_left_to_record

    def get_frames_to_analyze(self):
        return self.frames_to_analyze

    def get_frames_left_to_analyze(self):
        return self.frames_left_to_analyze

    def get_total_bytes_captured(self):
        return self.total_bytes_captured

    def get_sample_rate_in(self):
        return self.sample_rate_in

    def get_sample_rate_out(self):
        return self.sample_rate_out

    def get_samples_per_frame(self):
        return self.samples_per_frame

    def get_samples_per_frame_out(self):
        return self.params.samples_per_frame_out

    def get_sample_size_bytes_in(self):
        return self.sample_size_bytes_in

    def get_sample_size_bytes_out(self):
        return self.sample_size_bytes_out
