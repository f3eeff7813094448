"""Clip playback for the chanting client.

Kept out of the core modules so the web service and the tests never need
PortAudio.
"""

import logging
import threading

import numpy as np
import sounddevice as sd
import soundfile as sf

logger = logging.getLogger(__name__)


class SoundDevicePlayer:
    """One playback handle over a decoded clip.

    The clip lives in memory; the output stream callback copies frames from
    the play head. Rate changes step through the samples faster or slower,
    so pitch follows speed.
    """

    def __init__(self, device=None, blocksize=1024):
        self.device = device
        self.blocksize = blocksize
        self.rate = 1.0
        self._lock = threading.Lock()
        self._data = None
        self._samplerate = 0
        self._pos = 0.0
        self._playing = False
        self._stream = None

    def load(self, path):
        data, samplerate = sf.read(str(path), dtype="float32", always_2d=True)
        self.close()
        with self._lock:
            self._data = data
            self._samplerate = samplerate
            self._pos = 0.0
            self._playing = False
        self._stream = sd.OutputStream(
            samplerate=samplerate,
            channels=data.shape[1],
            dtype="float32",
            blocksize=self.blocksize,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()

    @property
    def duration(self) -> float:
        if self._data is None:
            return 0.0
        return len(self._data) / self._samplerate

    @property
    def position(self) -> float:
        if self._data is None:
            return 0.0
        with self._lock:
            return self._pos / self._samplerate

    @property
    def playing(self) -> bool:
        return self._playing

    def play(self):
        if self._data is None:
            raise RuntimeError("No clip loaded")
        with self._lock:
            if self._pos >= len(self._data):
                self._pos = 0.0
            self._playing = True

    def pause(self):
        with self._lock:
            self._playing = False

    def seek(self, seconds):
        if self._data is None:
            return
        with self._lock:
            self._pos = min(max(0.0, seconds * self._samplerate), float(len(self._data)))

    def close(self):
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug("Output stream status: %s", status)
        outdata.fill(0)
        with self._lock:
            if not self._playing or self._data is None:
                return
            total = len(self._data)
            idx = (self._pos + np.arange(frames) * self.rate).astype(np.int64)
            valid = idx < total
            outdata[valid] = self._data[idx[valid]]
            self._pos += frames * self.rate
            if self._pos >= total:
                self._pos = float(total)
                self._playing = False
