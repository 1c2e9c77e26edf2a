from __future__ import annotations
import logging
import queue
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

try:
    import sounddevice as sd
except Exception:  # PortAudio missing; validated when the stream is opened
    sd = None  # type: ignore

from .errors import EngineError, PolicyDeniedError

logger = logging.getLogger("speech.audio")

# PortAudio paDeviceUnavailable: device held or blocked by the platform
PA_DEVICE_UNAVAILABLE = -9985


@dataclass
class AudioConfig:
    device: Optional[str] = None  # ALSA device name or index
    samplerate: int = 16000
    channels: int = 1
    dtype: str = "int16"          # PCM 16-bit, what vosk expects
    frame_ms: int = 30
    queue_frames: int = 32


def is_policy_denial(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    args = getattr(exc, "args", ())
    return len(args) > 1 and args[1] == PA_DEVICE_UNAVAILABLE


class AudioCapture:
    """Pull-based microphone capture using sounddevice (PortAudio/ALSA)."""

    def __init__(self, cfg: Dict):
        self.cfg = AudioConfig(
            device=cfg.get("device"),
            samplerate=int(cfg.get("samplerate", 16000)),
            channels=int(cfg.get("channels", 1)),
            dtype=str(cfg.get("dtype", "int16")),
            frame_ms=int(cfg.get("frame_ms", 30)),
            queue_frames=int(cfg.get("queue_frames", 32)),
        )
        self._q: "queue.Queue[bytes]" = queue.Queue(maxsize=self.cfg.queue_frames)
        self._stream = None
        self._stopped = True

    def _callback(self, indata, frames, time, status):  # noqa: D401
        if status:
            logger.warning("Audio status: %s", status)
        try:
            self._q.put_nowait(bytes(indata))
        except queue.Full:
            pass

    def start(self) -> None:
        """Open and start the input stream.

        Raises PolicyDeniedError when the platform blocks the device and
        EngineError when PortAudio is not available at all.
        """
        if sd is None:
            raise EngineError("sounddevice not available. Install with 'pip install sounddevice' and ensure audio devices are present.")
        blocksize = int(self.cfg.samplerate * self.cfg.frame_ms / 1000)
        try:
            self._stream = sd.InputStream(
                device=self.cfg.device,
                channels=self.cfg.channels,
                samplerate=self.cfg.samplerate,
                dtype=self.cfg.dtype,
                callback=self._callback,
                blocksize=blocksize,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            if is_policy_denial(exc):
                code = exc.args[1] if len(exc.args) > 1 else None
                raise PolicyDeniedError(f"audio device denied: {exc}", code=code) from exc
            raise
        self._stopped = False
        logger.info("Audio capture started: %s @ %d Hz", self.cfg.device or "default", self.cfg.samplerate)

    def stop(self) -> None:
        self._stopped = True
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            finally:
                self._stream = None
            logger.info("Audio capture stopped")
        while not self._q.empty():
            try:
                self._q.get_nowait()
            except queue.Empty:
                break

    def stream(self) -> Iterator[bytes]:
        """Yield audio frames until stop() is called."""
        while not self._stopped:
            try:
                yield self._q.get(timeout=0.5)
            except queue.Empty:
                continue
