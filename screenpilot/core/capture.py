"""Screen capture and frame preparation."""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Protocol

import cv2
import numpy as np
from loguru import logger

RegionKind = Literal["active_window", "cursor_region", "change_area", "full_screen"]


@dataclass
class CaptureRegion:
    """Screen area of interest; higher priority regions are captured first."""
    kind: RegionKind
    bounds: tuple[int, int, int, int]  # (x, y, w, h) in screen pixels
    priority: int = 1


@dataclass
class Frame:
    """Captured frame with metadata."""
    image_bytes: bytes  # encoded PNG/JPEG
    ts: float
    display_id: str = "primary"
    change_percent: float = 100.0
    regions: List[CaptureRegion] = field(default_factory=list)


class FrameSource(Protocol):
    """Screenshot provider. Returns None when the capture fails."""
    def capture_frame(self, region: Optional[CaptureRegion] = None) -> Optional[Frame]: ...


def optimize_frame(image_bgr: np.ndarray, max_width: int, max_height: int, jpeg_quality: int) -> bytes:
    """Fit the image inside max_width x max_height (never enlarging) and JPEG encode it.

    Args:
        image_bgr: Decoded frame (BGR or grayscale)
        max_width: Maximum output width
        max_height: Maximum output height
        jpeg_quality: JPEG quality 1-100

    Returns:
        JPEG bytes
    """
    h, w = image_bgr.shape[:2]
    scale = min(max_width / w, max_height / h, 1.0)
    if scale < 1.0:
        new_w = max(1, int(w * scale))
        new_h = max(1, int(h * scale))
        image_bgr = cv2.resize(image_bgr, (new_w, new_h), interpolation=cv2.INTER_AREA)

    encode_params = [cv2.IMWRITE_JPEG_QUALITY, int(jpeg_quality)]
    ok, buffer = cv2.imencode(".jpg", image_bgr, encode_params)
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


class ScreenCapture:
    """Desktop screenshots via mss."""

    def __init__(
        self,
        monitor: int = 1,
        focus_areas: Optional[List[str]] = None,
        cursor_region_size: int = 400,
        cursor_region_priority: int = 9,
        cursor_provider: Optional[Callable[[], tuple[int, int]]] = None,
    ) -> None:
        """Initialize desktop capture.

        Args:
            monitor: mss monitor index (0 = union of all monitors)
            focus_areas: Region kinds to consider, highest priority first
            cursor_region_size: Edge length of the square around the cursor
            cursor_region_priority: Region priority; above 8 the frame is
                analyzed as high priority
            cursor_provider: Returns the current cursor position; cursor
                regions are skipped without one
        """
        import mss
        import mss.tools

        self._mss = mss
        self.monitor = monitor
        self.focus_areas = focus_areas or ["active_window", "cursor_region"]
        self.cursor_region_size = cursor_region_size
        self.cursor_region_priority = cursor_region_priority
        self.cursor_provider = cursor_provider

    def _monitor_bounds(self) -> Dict[str, int]:
        with self._mss.mss() as sct:
            monitors = sct.monitors
            index = self.monitor if self.monitor < len(monitors) else 1
            return dict(monitors[index])

    def detect_regions(self) -> List[CaptureRegion]:
        """Candidate regions sorted by descending priority."""
        mon = self._monitor_bounds()
        screen_bounds = (mon["left"], mon["top"], mon["width"], mon["height"])
        regions: List[CaptureRegion] = []

        if "active_window" in self.focus_areas:
            # No portable active-window API; the monitor stands in for it
            regions.append(CaptureRegion("active_window", screen_bounds, priority=10))

        if "cursor_region" in self.focus_areas and self.cursor_provider is not None:
            cx, cy = self.cursor_provider()
            half = self.cursor_region_size // 2
            regions.append(CaptureRegion(
                "cursor_region",
                (max(mon["left"], cx - half), max(mon["top"], cy - half),
                 self.cursor_region_size, self.cursor_region_size),
                priority=self.cursor_region_priority,
            ))

        regions.append(CaptureRegion("full_screen", screen_bounds, priority=1))
        return sorted(regions, key=lambda r: r.priority, reverse=True)

    def capture_frame(self, region: Optional[CaptureRegion] = None) -> Optional[Frame]:
        """Grab one frame as PNG bytes; None on capture failure."""
        ts = time.time()
        try:
            regions = self.detect_regions()
            target = region or regions[0]
            x, y, w, h = target.bounds
            with self._mss.mss() as sct:
                shot = sct.grab({"left": x, "top": y, "width": w, "height": h})
                png_bytes = self._mss.tools.to_png(shot.rgb, shot.size)
        except Exception as e:
            logger.warning(f"Screen capture failed: {e}")
            return None

        logger.debug(f"Captured {target.kind} region {w}x{h}")
        return Frame(
            image_bytes=png_bytes,
            ts=ts,
            display_id=f"monitor-{self.monitor}",
            regions=regions,
        )
