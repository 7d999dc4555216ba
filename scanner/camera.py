import hashlib
import logging

import cv2 # type: ignore
import numpy as np # type: ignore

from backend.qr import decode_frame

logger = logging.getLogger(__name__)

FINGERPRINT_SIZE = (32, 32)
FINGERPRINT_LEVELS = 16


class CameraError(RuntimeError):
    pass


def frame_fingerprint(frame) -> str:
    """Coarse content hash; sensor noise below one quantization step is ignored."""
    small = cv2.resize(frame, FINGERPRINT_SIZE, interpolation=cv2.INTER_AREA)
    if small.ndim == 3:
        small = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
    quantized = (small // (256 // FINGERPRINT_LEVELS)).astype(np.uint8)
    return hashlib.blake2b(quantized.tobytes(), digest_size=16).hexdigest()


class ScanDecoder:
    """
    Owns the camera and turns frames into decoded QR payloads.

    poll() emits at most one decode per distinguishable frame: a frame whose
    fingerprint equals the previous frame's is not decoded again.
    """

    def __init__(
        self,
        camera_index: int = 0,
        *,
        capture_factory=None,
        detector=None,
        width: int = 640,
        height: int = 480,
    ):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self._capture_factory = capture_factory or cv2.VideoCapture
        self._detector = detector
        self._capture = None
        self._last_fingerprint: str | None = None
        self.frames_read = 0
        self.decodes = 0

    @property
    def running(self) -> bool:
        return self._capture is not None

    def start(self) -> None:
        if self._capture is not None:
            return

        capture = self._capture_factory(self.camera_index)
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"Could not open camera at index {self.camera_index}")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture
        self._last_fingerprint = None
        logger.info("Camera %s started", self.camera_index)

    def stop(self) -> None:
        capture = self._capture
        self._capture = None
        if capture is not None:
            capture.release()
            logger.info("Camera %s stopped", self.camera_index)

    def poll(self) -> str | None:
        if self._capture is None:
            raise CameraError("Camera is not started.")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        self.frames_read += 1

        fingerprint = frame_fingerprint(frame)
        if fingerprint == self._last_fingerprint:
            return None
        self._last_fingerprint = fingerprint

        text, _reason = decode_frame(frame, self._detector)
        if text:
            self.decodes += 1
        return text

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
