"""Perceptual fingerprints for frame change detection and near-duplicate lookup."""

from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (PNG/JPEG/...) into a BGR array.

    Raises:
        ValueError: If the bytes are not a decodable image
    """
    if not data:
        raise ValueError("Empty image data")
    try:
        pil_image = Image.open(BytesIO(data))
        pil_image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Cannot decode image data: {e}") from e

    if pil_image.mode not in ("RGB", "L"):
        pil_image = pil_image.convert("RGB")

    image = np.array(pil_image)
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3 and image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.ndim == 3 and image.shape[2] == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 2:
        gray = image
    else:
        raise ValueError(f"Unsupported image shape: {image.shape}")

    if gray.dtype != np.uint8:
        gray = gray.astype(np.uint8)
    return gray


@dataclass(frozen=True)
class PerceptualFingerprint:
    """Fixed-length bit string, packed row-major into an integer (MSB first)."""
    value: int
    size: int = 64

    def distance(self, other: "PerceptualFingerprint") -> int:
        """Hamming distance; fingerprints of different sizes are maximally distant."""
        if self.size != other.size:
            return max(self.size, other.size)
        return (self.value ^ other.value).bit_count()

    def change_percent(self, other: "PerceptualFingerprint") -> float:
        """Percent of differing bits relative to ``other``."""
        return self.distance(other) / max(self.size, other.size) * 100.0

    def to_hex(self) -> str:
        return format(self.value, 'x').zfill((self.size + 3) // 4)

    @classmethod
    def from_hex(cls, text: str, size: int = 64) -> "PerceptualFingerprint":
        value = int(text, 16)
        if value.bit_length() > size:
            raise ValueError(f"Fingerprint {text!r} does not fit in {size} bits")
        return cls(value=value, size=size)

    def __str__(self) -> str:
        return format(self.value, 'b').zfill(self.size)


class PerceptualHasher:
    """Average hash: resize to a small grid, grayscale, one bit per cell above the mean.

    Attributes:
        hash_size: Grid edge length (nbits = hash_size * hash_size)
    """

    def __init__(self, hash_size: int = 8):
        if hash_size < 2:
            raise ValueError("hash_size must be at least 2")
        self.hash_size = int(hash_size)

    @property
    def nbits(self) -> int:
        return self.hash_size * self.hash_size

    def fingerprint(self, image: Union[bytes, np.ndarray]) -> PerceptualFingerprint:
        """Compute the fingerprint of encoded image bytes or a decoded array.

        Raises:
            ValueError: If ``image`` cannot be decoded
        """
        if isinstance(image, (bytes, bytearray, memoryview)):
            image = decode_image(bytes(image))

        gray = _to_gray(image)
        resized = cv2.resize(gray, (self.hash_size, self.hash_size), interpolation=cv2.INTER_AREA)
        mean_val = float(np.mean(resized.astype(np.float32)))
        bits = (resized.astype(np.float32) > mean_val).flatten()

        h = 0
        for bit in bits:
            h = (h << 1) | int(bit)
        return PerceptualFingerprint(value=h, size=self.nbits)

    @staticmethod
    def distance(a: PerceptualFingerprint, b: PerceptualFingerprint) -> int:
        return a.distance(b)


class ChangeDetector:
    """Compares each fingerprint with the last one that counted as a change.

    The reference only moves when a change is detected (or on first use), so
    slow drifts below the threshold still accumulate into a change.
    """

    def __init__(self, threshold_percent: float = 0.5, enabled: bool = True):
        self.threshold_percent = float(threshold_percent)
        self.enabled = enabled
        self._last: Optional[PerceptualFingerprint] = None

    @property
    def last_fingerprint(self) -> Optional[PerceptualFingerprint]:
        return self._last

    def check(self, fingerprint: PerceptualFingerprint) -> tuple[bool, float]:
        """Return ``(changed, change_percent)`` and update the reference on change."""
        if self._last is None or not self.enabled:
            self._last = fingerprint
            return True, 100.0

        change = fingerprint.change_percent(self._last)
        if change < self.threshold_percent:
            return False, change

        self._last = fingerprint
        return True, change

    def reset(self) -> None:
        self._last = None
