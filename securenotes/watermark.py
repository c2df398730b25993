"""
Watermark overlay for the note viewer.

The overlay only discourages casual resharing. Anyone holding a signed url
can fetch the file without it until the url expires, and the overlay can be
removed with browser dev tools. It is not an access control.
"""

import base64
from datetime import datetime, UTC
from typing import Dict, Optional
from xml.sax.saxutils import escape

TILE_WIDTH = 320
TILE_HEIGHT = 180
ANGLE = -30
OPACITY = 0.12


class Watermark:
    def __init__(self, label: str, timestamp: str, svg: str):
        self.label = label
        self.timestamp = timestamp
        self.svg = svg

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.svg.encode("utf-8")).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def overlay_style(self) -> Dict[str, str]:
        """CSS for an element stacked above the viewer that never takes input."""
        return {
            "position": "absolute",
            "inset": "0",
            "pointer-events": "none",
            "user-select": "none",
            "z-index": "10",
            "background-image": f"url(\"{self.data_uri}\")",
            "background-repeat": "repeat",
            "background-size": f"{TILE_WIDTH}px {TILE_HEIGHT}px",
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "label": self.label,
            "timestamp": self.timestamp,
            "image": self.data_uri,
            "style": self.overlay_style(),
        }


def watermark_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(UTC)).strftime("%Y-%m-%d %H:%M UTC")


def compose_watermark(identity_label: str, timestamp: str, width: int = TILE_WIDTH,
                      height: int = TILE_HEIGHT, opacity: float = OPACITY, angle: int = ANGLE) -> Watermark:
    """
    Build one tile of the watermark pattern as SVG.

    The tile holds the identity label and timestamp on two lines, rotated
    around the tile centre at low opacity. Repeating the tile as a
    background gives the tiled pattern.
    """
    label = identity_label.strip() or "your account"
    cx, cy = width // 2, height // 2
    svg = (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">'
        f'<g transform="rotate({angle} {cx} {cy})" fill="#0f172a" fill-opacity="{opacity}" '
        f'font-family="sans-serif" text-anchor="middle">'
        f'<text x="{cx}" y="{cy - 6}" font-size="16">{escape(label)}</text>'
        f'<text x="{cx}" y="{cy + 14}" font-size="12">{escape(timestamp)}</text>'
        f'</g></svg>'
    )
    return Watermark(label, timestamp, svg)
