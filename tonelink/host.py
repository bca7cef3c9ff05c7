# host.py
#
# Audio device glue for the engine. Capture and playback run through
# sounddevice streams whose callbacks fill and drain two byte queues; the
# engine only ever sees those queues through queue_audio() and
# dequeue_audio(). update() is one tick of the half-duplex arbitration:
# transmit while the engine has data, otherwise let playback drain, back
# off for a moment and then listen.

import enum
import logging
import threading
import time

import numpy as np

from .errors import DeviceError

_logger = logging.getLogger(__name__)

RECEIVE_BACKOFF_MS = 500.0   # Silence after playback before capture is trusted again
MAX_QUEUED_CAPTURE_FRAMES = 32


def _sounddevice():
    # PortAudio is loaded on import, so only touch it when a device is needed
    try:
        import sounddevice
    except OSError as e:
        raise DeviceError(f"PortAudio is not available: {e}") from e
    return sounddevice


def list_devices():
    """The capture and playback devices PortAudio knows about, as printed by sounddevice."""
    return _sounddevice().query_devices()


class ArbitrationState(enum.Enum):
    LISTENING = "listening"
    TRANSMITTING = "transmitting"


class AudioHost:
    """Owns the capture/playback devices and drives one DataRxTx engine."""

    def __init__(self, engine, capture_device=None, playback_device=None, clock=time.monotonic):
        self.engine = engine
        self.capture_device = capture_device
        self.playback_device = playback_device
        self.state = ArbitrationState.LISTENING
        self.capture_paused = True
        self.playback_paused = True
        self._clock = clock
        self._last_playback_ms = clock() * 1000.0
        self._capture = bytearray()
        self._playback = bytearray()
        self._queue_lock = threading.Lock()
        self._input_stream = None
        self._output_stream = None

    # --- Devices ---

    def open(self):
        engine = self.engine
        sd = _sounddevice()
        try:
            self._output_stream = sd.OutputStream(
                samplerate=engine.get_sample_rate_out(),
                channels=1,
                dtype="int16" if engine.get_sample_size_bytes_out() == 2 else "float32",
                device=self.playback_device,
                callback=self._playback_callback,
            )
            self._input_stream = sd.InputStream(
                samplerate=engine.get_sample_rate_in(),
                channels=1,
                dtype="int16" if engine.get_sample_size_bytes_in() == 2 else "float32",
                blocksize=engine.get_samples_per_frame(),
                device=self.capture_device,
                callback=self._capture_callback,
            )
        except sd.PortAudioError as e:
            self.close()
            raise DeviceError(f"Could not open audio devices: {e}") from e
        self._output_stream.start()
        self._input_stream.start()
        _logger.info(f"Capture at {engine.get_sample_rate_in()} Hz, playback at {engine.get_sample_rate_out()} Hz")

    def close(self):
        for stream in (self._input_stream, self._output_stream):
            if stream is not None:
                stream.stop()
                stream.close()
        self._input_stream = None
        self._output_stream = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()

    def _capture_callback(self, indata, frames, time_info, status):
        if status:
            _logger.warning(f"Capture status: {status}")
        if self.capture_paused:
            return
        with self._queue_lock:
            self._capture += indata[:, 0].tobytes()

    def _playback_callback(self, outdata, frames, time_info, status):
        if status:
            _logger.warning(f"Playback status: {status}")
        outdata.fill(0)
        if self.playback_paused:
            return
        n_bytes = frames * outdata.dtype.itemsize
        with self._queue_lock:
            chunk = bytes(self._playback[:n_bytes])
            del self._playback[:n_bytes]
        samples = np.frombuffer(chunk, dtype=outdata.dtype)
        outdata[:len(samples), 0] = samples

    # --- Queues ---

    def queue_audio(self, data):
        with self._queue_lock:
            self._playback += data

    def dequeue_audio(self, max_bytes):
        with self._queue_lock:
            chunk = bytes(self._capture[:max_bytes])
            del self._capture[:max_bytes]
        return chunk

    def queued_capture_bytes(self):
        with self._queue_lock:
            return len(self._capture)

    def queued_playback_bytes(self):
        with self._queue_lock:
            return len(self._playback)

    def clear_capture(self):
        with self._queue_lock:
            self._capture.clear()

    # --- Main loop tick ---

    def update(self):
        engine = self.engine
        now_ms = self._clock() * 1000.0
        if engine.get_has_data():
            self.state = ArbitrationState.TRANSMITTING
            self.playback_paused = True
            self.capture_paused = True
            engine.send(self.queue_audio)
            return

        self.state = ArbitrationState.LISTENING
        self.playback_paused = False
        frame_bytes_out = engine.get_samples_per_frame_out() * engine.get_sample_size_bytes_out()
        if self.queued_playback_bytes() >= frame_bytes_out:
            self._last_playback_ms = now_ms
            return

        self.capture_paused = False
        if now_ms - self._last_playback_ms > RECEIVE_BACKOFF_MS:
            engine.receive(self.dequeue_audio)
            frame_bytes_in = engine.get_samples_per_frame() * engine.get_sample_size_bytes_in()
            if self.queued_capture_bytes() > MAX_QUEUED_CAPTURE_FRAMES * frame_bytes_in:
                _logger.debug("Capture queue overflow, dropping stale audio")
                self.clear_capture()
        else:
            # Our own transmission may still echo in the room
            self.clear_capture()
