"""
Rendition planning: which HLS variants to encode for a source.

A standard tier is used only if the source is at least as large in both
dimensions, so the ladder never upscales. Sources smaller than every tier get
a single variant at their own size.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from config import RENDITION_TIERS

NATIVE_RENDITION_NAME = "native"


@dataclass(frozen=True)
class Rendition:
    name: str
    width: int
    height: int
    bitrate: int  # kbps

    @property
    def bitrate_arg(self) -> str:
        """Bitrate as an ffmpeg argument (e.g. "800k")."""
        return f"{self.bitrate}k"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


def _tiers(tiers: Optional[Iterable[Mapping]] = None) -> List[Rendition]:
    ladder = [
        Rendition(name=t["name"], width=int(t["width"]), height=int(t["height"]), bitrate=int(t["bitrate"]))
        for t in (RENDITION_TIERS if tiers is None else tiers)
    ]
    return sorted(ladder, key=lambda r: (r.width * r.height, r.bitrate))


def plan_renditions(
    source_width: int,
    source_height: int,
    tiers: Optional[Iterable[Mapping]] = None,
) -> List[Rendition]:
    """
    Plan the renditions for a source, ascending by quality.

    Args:
        source_width: Probed source width
        source_height: Probed source height
        tiers: Tier table override (defaults to RENDITION_TIERS)

    Returns:
        Non-empty list of renditions, none larger than the source

    Raises:
        ValueError: If either dimension is not positive
    """
    if source_width <= 0 or source_height <= 0:
        raise ValueError(f"Invalid source dimensions: {source_width}x{source_height}")

    ladder = _tiers(tiers)
    plan = [r for r in ladder if r.width <= source_width and r.height <= source_height]
    if not plan:
        plan = [
            Rendition(
                name=NATIVE_RENDITION_NAME,
                width=source_width,
                height=source_height,
                bitrate=ladder[0].bitrate,
            )
        ]
    return plan
