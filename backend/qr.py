import cv2 # type: ignore
import numpy as np # type: ignore

from backend.config import QR_RENDER_SCALE

QR_DETECTOR = cv2.QRCodeDetector()
QUIET_ZONE_MODULES = 4


def decode_frame(frame_bgr, detector=None):
    """
    Returns:
      (text:str|None, reason:str|None)
    """
    if frame_bgr is None or getattr(frame_bgr, "size", 0) == 0:
        return None, "empty_frame"

    active = detector or QR_DETECTOR
    if frame_bgr.ndim == 3:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    else:
        gray = frame_bgr

    text, _points, _straight = active.detectAndDecode(gray)
    if not text:
        return None, "no_code"
    return text, None


def decode_image_bytes(data: bytes):
    """Decode an uploaded JPG/PNG. Returns (text, reason); reason "invalid_image" if unreadable."""
    if not data:
        return None, "invalid_image"

    img_array = np.frombuffer(data, np.uint8)
    try:
        frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    except cv2.error:
        return None, "invalid_image"
    if frame is None:
        return None, "invalid_image"
    return decode_frame(frame)


def render_qr_png(payload: str, scale: int | None = None) -> bytes:
    encoder = cv2.QRCodeEncoder.create()
    matrix = encoder.encode(payload)

    factor = max(1, int(scale or QR_RENDER_SCALE))
    image = cv2.resize(
        matrix,
        (matrix.shape[1] * factor, matrix.shape[0] * factor),
        interpolation=cv2.INTER_NEAREST,
    )
    border = QUIET_ZONE_MODULES * factor
    image = cv2.copyMakeBorder(image, border, border, border, border, cv2.BORDER_CONSTANT, value=255)

    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise ValueError("Could not encode QR image.")
    return encoded.tobytes()
