"""
URL Transformer Module

Handles parsing Tencent Cloud COS imageMogr2 processing URLs and generating
new ones from a set of operations.
"""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import ParseResult, SplitResult, quote, unquote, urlsplit

from .operations import (
    FLIP_AXES,
    OPTION_FIELDS,
    Operations,
    layer,
    parse_int,
    parse_quality,
)

logger = logging.getLogger(__name__)

UrlLike = Union[str, SplitResult, ParseResult]

NAMESPACE = "imageMogr2"
PIPELINE_SEPARATOR = "|"
DEFAULT_PORTS = {"http": 80, "https": 443}
# RFC 3986 pchar delimiters plus "/" and "%" so existing escapes survive
PATH_SAFE = "/%:@!$&'()*+,;="

# {bucket}-{appid}.{cos|pic}.{region}.myqcloud.com
COS_HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9-]+-\d+\.(?:cos|pic)\.[a-z]+-[a-z0-9]+(?:-\d+)?\.myqcloud\.com$"
)

THUMBNAIL_RE = re.compile(r"^(\d*)x(\d*)([!><])?")
CROP_RE = re.compile(r"^(\d*)x(\d*)")

# thumbnail_mode -> (keyword, size suffix)
RESIZE_TOKENS = {
    "fit": ("thumbnail", ""),
    "cover": ("crop", ""),
    "force": ("thumbnail", "!"),
    "shrink_only": ("thumbnail", ">"),
    "enlarge_only": ("thumbnail", "<"),
}
THUMBNAIL_MODIFIERS = {"!": "force", ">": "shrink_only", "<": "enlarge_only"}

INT_KEYWORDS = ("iradius", "rradius", "rotate", "rquality", "lquality")


@dataclass(frozen=True)
class Extraction:
    """State recovered from an already-processed COS URL. Read-only."""
    src: str
    operations: Mapping[str, Any]
    options: Mapping[str, Any] = field(default_factory=dict)
    pipeline_segments: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "operations", MappingProxyType(dict(self.operations)))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))
        object.__setattr__(self, "pipeline_segments", tuple(self.pipeline_segments))


def _split_url(url: UrlLike) -> Optional[SplitResult]:
    """Parse ``url`` into a SplitResult, or None when it is not a usable URL."""
    try:
        if isinstance(url, ParseResult):
            parts = urlsplit(url.geturl())
        elif isinstance(url, SplitResult):
            parts = url
        else:
            parts = urlsplit(str(url))
        # Accessing .port validates it
        parts.port
    except ValueError:
        return None

    if not parts.scheme or not parts.hostname:
        return None
    return parts


def _normalize_path(path: str) -> str:
    """Resolve dot-segments and percent-encode the path as a URL serializer would."""
    segments = path.split("/")[1:] if path.startswith("/") else path.split("/")
    output: List[str] = []

    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        if segment == ".":
            if last:
                output.append("")
        elif segment == "..":
            if output:
                output.pop()
            if last:
                output.append("")
        else:
            output.append(segment)

    return quote("/" + "/".join(output), safe=PATH_SAFE)


def _base_url(parts: SplitResult) -> str:
    """Rebuild origin + path, dropping userinfo, query and fragment."""
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port is not None and parts.port != DEFAULT_PORTS.get(parts.scheme):
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{_normalize_path(parts.path)}"


def _to_string(url: UrlLike) -> str:
    if isinstance(url, (SplitResult, ParseResult)):
        return url.geturl()
    return str(url)


def is_cos_url(url: UrlLike) -> bool:
    """
    Check whether ``url`` points to a COS object.

    Both the standard ``cos`` endpoint and the CI ``pic`` endpoint match.
    Malformed input returns False.
    """
    parts = _split_url(url)
    if parts is None:
        return False
    return bool(COS_HOSTNAME_RE.match(parts.hostname or ""))


def build_image_mogr2(ops: Mapping) -> str:
    """
    Build the imageMogr2 processing segment for a set of operations.

    Tokens are always emitted in the same order, so equal operation sets
    produce identical strings.

    Example output: ``imageMogr2/thumbnail/400x300/format/webp/quality/85``

    Args:
        ops: Operation set

    Returns:
        Processing segment, or an empty string when nothing is set
    """
    ops = layer(ops)
    parts: List[str] = []

    width = ops.get("width")
    height = ops.get("height")
    if width is not None or height is not None:
        mode = ops.get("thumbnail_mode") or "fit"
        keyword, suffix = RESIZE_TOKENS.get(mode, RESIZE_TOKENS["fit"])
        w = "" if width is None else width
        h = "" if height is None else height
        parts.append(f"{keyword}/{w}x{h}{suffix}")

    for key in ("iradius", "rradius"):
        if key in ops:
            parts.append(f"{key}/{ops[key]}")

    if ops.get("auto_orient"):
        parts.append("auto-orient")

    if "rotate" in ops:
        parts.append(f"rotate/{ops['rotate']}")

    if "flip" in ops:
        parts.append(f"flip/{ops['flip']}")

    if "format" in ops:
        parts.append(f"format/{ops['format']}")

    if "quality" in ops:
        parts.append(f"quality/{ops['quality']}")

    for key in ("rquality", "lquality"):
        if key in ops:
            parts.append(f"{key}/{ops[key]}")

    if ops.get("ignore_error"):
        parts.append("ignore-error/1")

    if not parts:
        return ""

    return f"{NAMESPACE}/{'/'.join(parts)}"


def parse_image_mogr2(segment: str) -> Operations:
    """
    Parse a single imageMogr2 segment into a set of operations.

    The ``imageMogr2/`` prefix is optional. Unknown tokens are skipped one
    at a time; recognised keywords with an unusable argument leave their
    field unset.

    Args:
        segment: One pipeline segment (no ``|`` separators)

    Returns:
        Parsed operation set, possibly empty
    """
    ops: Dict[str, object] = {}

    stripped = re.sub(rf"^{NAMESPACE}/?", "", segment or "")
    if not stripped:
        return ops  # type: ignore[return-value]

    tokens = stripped.split("/")
    i = 0

    while i < len(tokens):
        token = tokens[i]
        has_arg = i + 1 < len(tokens)
        arg = tokens[i + 1] if has_arg else ""

        if token == "auto-orient":
            ops["auto_orient"] = True
            i += 1
            continue

        if token == "ignore-error":
            ops["ignore_error"] = True
            i += 2 if arg == "1" else 1
            continue

        if not has_arg:
            logger.debug(f"Skipping token without argument: {token!r}")
            i += 1
            continue

        if token == "thumbnail":
            match = THUMBNAIL_RE.match(arg)
            if match:
                width, height, modifier = match.groups()
                if width:
                    ops["width"] = int(width)
                if height:
                    ops["height"] = int(height)
                if modifier:
                    ops["thumbnail_mode"] = THUMBNAIL_MODIFIERS[modifier]
            else:
                logger.debug(f"Unsupported thumbnail argument: {arg!r}")
        elif token == "crop":
            match = CROP_RE.match(arg)
            if match:
                width, height = match.groups()
                if width:
                    ops["width"] = int(width)
                if height:
                    ops["height"] = int(height)
                ops["thumbnail_mode"] = "cover"
            else:
                logger.debug(f"Unsupported crop argument: {arg!r}")
        elif token == "gravity":
            pass
        elif token in INT_KEYWORDS:
            number = parse_int(arg)
            if number is not None:
                ops[token] = number
            else:
                logger.debug(f"Ignoring non-numeric {token}: {arg!r}")
        elif token == "flip":
            if arg in FLIP_AXES:
                ops["flip"] = arg
            else:
                logger.debug(f"Ignoring unknown flip axis: {arg!r}")
        elif token == "format":
            ops["format"] = arg
        elif token == "quality":
            ops["quality"] = parse_quality(arg)
        else:
            logger.debug(f"Skipping unknown token: {token!r}")
            i += 1
            continue

        i += 2

    return ops  # type: ignore[return-value]


def extract(url: UrlLike) -> Optional[Extraction]:
    """
    Extract the base COS object URL and existing processing state.

    All imageMogr2 segments in the pipeline are merged, later segments
    overriding earlier ones field by field. Other pipeline segments
    (watermarks etc.) are kept verbatim and in order.

    Args:
        url: A processed COS URL

    Returns:
        Extraction, or None when the URL is not a COS URL or carries
        nothing to extract
    """
    parts = _split_url(url)
    if parts is None or not is_cos_url(parts):
        logger.debug(f"Not a COS URL: {_to_string(url)}")
        return None

    raw_query = unquote(parts.query)
    if not raw_query:
        return None

    operations: Dict[str, object] = {}
    foreign: List[str] = []
    found = False

    for segment in raw_query.split(PIPELINE_SEPARATOR):
        if segment.startswith(NAMESPACE):
            operations.update(parse_image_mogr2(segment))
            found = True
        else:
            foreign.append(segment)

    if not found and not foreign:
        return None

    return Extraction(
        src=_base_url(parts),
        operations=operations,
        options={},
        pipeline_segments=tuple(foreign),
    )


def generate(
    src: UrlLike,
    operations: Mapping,
    options: Optional[Mapping] = None,
    pipeline_segments: Optional[Sequence[str]] = None
) -> str:
    """
    Generate a COS image processing URL.

    Any query already on ``src`` is dropped; ``options`` only fill fields
    that ``operations`` leaves unspecified. The query string is appended
    raw so that ``/`` and ``|`` stay readable.

    Args:
        src: Base COS object URL
        operations: Operations to apply
        options: Fallback defaults
        pipeline_segments: Foreign pipeline segments to append after the
            imageMogr2 segment

    Returns:
        The processing URL, or ``src`` unchanged when it is not a COS URL
    """
    parts = _split_url(src)
    if parts is None or not is_cos_url(parts):
        return _to_string(src)

    defaults = {k: v for k, v in (options or {}).items() if k in OPTION_FIELDS}
    effective = layer(defaults, operations)

    base_url = _base_url(parts)
    processing = build_image_mogr2(effective)
    segments = list(pipeline_segments or [])

    if not processing and not segments:
        return base_url

    if processing:
        segments.insert(0, processing)

    return f"{base_url}?{PIPELINE_SEPARATOR.join(segments)}"


def transform(
    src: UrlLike,
    operations: Mapping,
    options: Optional[Mapping] = None
) -> str:
    """
    Transform a COS image URL, merging new operations onto existing ones.

    Precedence from lowest to highest: ``options`` defaults, operations
    already on the URL, explicit ``operations``. Foreign pipeline segments
    on the URL are preserved.

    Example:
        >>> transform("https://bucket-1250000000.cos.ap-beijing.myqcloud.com/photo.jpg",
        ...           {"width": 800, "format": "webp"})
        'https://bucket-1250000000.cos.ap-beijing.myqcloud.com/photo.jpg?imageMogr2/thumbnail/800x/format/webp'
    """
    base = extract(src)
    if base is None:
        return generate(src, operations, options)

    defaults = {k: v for k, v in (options or {}).items() if k in OPTION_FIELDS}
    merged = layer(defaults, base.operations, operations)

    return generate(base.src, merged, pipeline_segments=base.pipeline_segments)
