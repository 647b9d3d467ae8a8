"""
Simulated biometric capture.

None of this is biometric infrastructure. A capture is reduced to a 32-byte
hex digest sampled from image bytes, which is only useful as an opaque
placeholder stored with a registration request. Verification is an exact
comparison with the stored digest; the random-outcome path exists for demo
mode only and is always reported as simulated.
"""

import base64
import binascii
import hmac
import io
import math
import random
import secrets
import time
from typing import Optional

from PIL import Image, ImageDraw

DIGEST_BYTES = 32
DEMO_FACE_DATA = "0x" + "fa" * DIGEST_BYTES
DEMO_SUCCESS_RATE = 0.8

FINGERPRINT_SIZE = 300
RIDGES = 35
MINUTIAE = 30


class CaptureError(ValueError):
    pass


def sample_digest(data: bytes) -> str:
    """Sample evenly spaced bytes of `data` into a 0x-prefixed 32-byte hex string."""
    if len(data) < DIGEST_BYTES:
        raise CaptureError(f"Capture too small: need at least {DIGEST_BYTES} bytes")
    step = len(data) // DIGEST_BYTES
    sampled = data[::step][:DIGEST_BYTES]
    return "0x" + sampled.hex()


def decode_image(image: str) -> bytes:
    """Accepts raw base64 or a data URL."""
    if "," in image:
        _, image = image.split(",", 1)
    try:
        return base64.b64decode(image, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CaptureError("Image is not valid base64") from exc


def face_digest(image: Optional[str], demo_mode: bool = False) -> str:
    if image is None:
        if not demo_mode:
            raise CaptureError("An image is required outside demo mode")
        return DEMO_FACE_DATA
    raw = decode_image(image)
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.verify()
    except Exception as exc:
        raise CaptureError("Image could not be decoded") from exc
    return sample_digest(raw)


class _Lcg:
    # small LCG so a seed always renders the same pattern
    def __init__(self, seed: int):
        self.seed = seed

    def __call__(self) -> float:
        self.seed = (self.seed * 9301 + 49297) % 233280
        return self.seed / 233280


def draw_fingerprint(seed: int) -> Image.Image:
    """Render a procedural ridge pattern: rotated noisy ellipses plus minutiae dots."""
    rnd = _Lcg(seed)
    img = Image.new("L", (FINGERPRINT_SIZE, FINGERPRINT_SIZE), 255)
    draw = ImageDraw.Draw(img)
    cx = cy = FINGERPRINT_SIZE / 2

    draw.ellipse((cx - 5, cy - 5, cx + 5, cy + 5), fill=0)

    for i in range(RIDGES):
        rx = 30 + i * 5 + rnd() * 10
        ry = 20 + i * 5 + rnd() * 10
        rotation = rnd() * math.pi / 4
        points = []
        angle = 0.0
        while angle < math.pi * 2:
            dx = rnd() * 5 - 2.5
            dy = rnd() * 5 - 2.5
            x = cx + math.cos(angle) * rx * math.cos(rotation) - math.sin(angle) * ry * math.sin(rotation) + dx
            y = cy + math.cos(angle) * rx * math.sin(rotation) + math.sin(angle) * ry * math.cos(rotation) + dy
            points.append((x, y))
            angle += 0.05
        draw.line(points, fill=17, width=1)

    for _ in range(MINUTIAE):
        angle = rnd() * math.pi * 2
        distance = 30 + rnd() * 100
        x = cx + math.cos(angle) * distance
        y = cy + math.sin(angle) * distance
        draw.ellipse((x - 1, y - 1, x + 1, y + 1), fill=0)

    return img


def fingerprint_digest(seed: Optional[int] = None, demo_mode: bool = False) -> str:
    if demo_mode and seed is None:
        return random_fingerprint_hex()
    if seed is None:
        seed = int(time.time() * 1000)
    buf = io.BytesIO()
    draw_fingerprint(seed).save(buf, format="PNG")
    return sample_digest(buf.getvalue())


def random_fingerprint_hex() -> str:
    return "0x" + secrets.token_hex(DIGEST_BYTES)


def digests_match(stored: str, presented: str) -> bool:
    return hmac.compare_digest(stored.lower().encode(), presented.lower().encode())


def simulated_check(rng: Optional[random.Random] = None) -> bool:
    """Demo-mode outcome: succeeds DEMO_SUCCESS_RATE of the time."""
    rng = rng or random
    return rng.random() < DEMO_SUCCESS_RATE
