"""
Operations Module

Defines the imageMogr2 operation vocabulary, the layered default merge and
the token value parsers shared by the codec.
"""

import logging
import re
from typing import Any, Dict, Literal, Mapping, Optional, TypedDict, Union

logger = logging.getLogger(__name__)


ThumbnailMode = Literal["fit", "cover", "force", "shrink_only", "enlarge_only"]
FlipAxis = Literal["vertical", "horizontal"]

# Formats documented by COS / CI. Unlisted values still pass through untouched.
KNOWN_FORMATS = (
    "jpg", "png", "webp", "gif", "bmp",
    "heif", "heic", "avif", "tpg", "svgc",
)

FLIP_AXES = ("vertical", "horizontal")


class Options(TypedDict, total=False):
    """Fallback defaults, layered beneath every other source."""
    thumbnail_mode: ThumbnailMode
    format: str
    quality: Union[int, str]
    rquality: int
    lquality: int
    auto_orient: bool
    ignore_error: bool


class Operations(Options, total=False):
    """
    A set of imageMogr2 operations.

    A missing key means "unspecified", never "disabled". ``quality`` is an
    int, or a string such as ``"90!"`` when the provider must honour it
    exactly.
    """
    width: int
    height: int
    rotate: int
    flip: FlipAxis
    iradius: int
    rradius: int


OPTION_FIELDS = (
    "thumbnail_mode", "format", "quality", "rquality", "lquality",
    "auto_orient", "ignore_error",
)
INTEGER_RE = re.compile(r"^-?\d+$")


def layer(*sources: Optional[Mapping[str, Any]]) -> Operations:
    """
    Merge operation mappings in ascending order of precedence.

    Each source only overwrites the keys it explicitly carries; ``None``
    values are treated as absent while ``0`` and ``False`` are kept.

    Args:
        sources: Mappings from lowest to highest precedence (``None`` skipped)

    Returns:
        A new merged operation set
    """
    merged: Dict[str, Any] = {}

    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            if value is not None:
                merged[key] = value

    return merged  # type: ignore[return-value]


def parse_int(value: str) -> Optional[int]:
    """Parse a decimal integer token, returning None when it is not one."""
    if not isinstance(value, str) or not INTEGER_RE.match(value):
        return None
    return int(value)


def parse_quality(value: str) -> Union[int, str]:
    """Parse a quality token, keeping forced values like ``90!`` as strings."""
    number = parse_int(value)
    return value if number is None else number

