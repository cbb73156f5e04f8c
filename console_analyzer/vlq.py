"""Source map decoding.

Source map ``mappings`` are a semicolon-separated list of generated lines, each a
comma-separated list of segments, each segment a run of base64 VLQ integers:

    [generatedColumn, sourceIndex, originalLine, originalColumn, nameIndex]

Every field is a delta against the previous segment. The generated column resets
at the start of each line; the other four running totals persist for the whole
table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Iterable

from .errors import MappingDecodeError

logger = logging.getLogger("console_analyzer.vlq")

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
VLQ_BASE_SHIFT = 5
VLQ_BASE = 1 << VLQ_BASE_SHIFT  # 32
VLQ_BASE_MASK = VLQ_BASE - 1
VLQ_CONTINUATION_BIT = VLQ_BASE

_CHAR_TO_INT: Dict[str, int] = {c: i for i, c in enumerate(BASE64_CHARS)}


def decode_vlq(segment: str) -> List[int]:
    """Decode one segment into its list of signed integers.

    Raises:
        MappingDecodeError: on a character outside the base64 alphabet or a
            value cut off in the middle of a continuation run.
    """
    values: List[int] = []
    shift = 0
    value = 0

    for char in segment:
        digit = _CHAR_TO_INT.get(char)
        if digit is None:
            raise MappingDecodeError(f"Invalid base64 VLQ character {char!r} in {segment!r}")

        value += (digit & VLQ_BASE_MASK) << shift

        if digit & VLQ_CONTINUATION_BIT:
            shift += VLQ_BASE_SHIFT
            continue

        # Lowest bit carries the sign
        negate = value & 1
        value >>= 1
        values.append(-value if negate else value)
        value = 0
        shift = 0

    if shift:
        raise MappingDecodeError(f"Truncated VLQ value in {segment!r}")

    return values


def encode_vlq(values: Iterable[int]) -> str:
    """Encode integers as a base64 VLQ string (inverse of decode_vlq)."""
    out: List[str] = []
    for number in values:
        vlq = ((-number) << 1) | 1 if number < 0 else number << 1
        while True:
            digit = vlq & VLQ_BASE_MASK
            vlq >>= VLQ_BASE_SHIFT
            if vlq:
                digit |= VLQ_CONTINUATION_BIT
            out.append(BASE64_CHARS[digit])
            if not vlq:
                break
    return "".join(out)


@dataclass(frozen=True)
class Segment:
    """One generated-to-original position correspondence (0-based)."""
    generated_line: int
    generated_column: int
    source_index: Optional[int] = None
    original_line: Optional[int] = None
    original_column: Optional[int] = None
    name_index: Optional[int] = None

    @property
    def has_source(self) -> bool:
        return self.original_line is not None


def decode_mappings(mappings: str) -> List[Segment]:
    """Decode a full ``mappings`` string into absolute-position segments.

    Segments are returned in table order; nothing is re-sorted.
    """
    segments: List[Segment] = []

    source_index = 0
    original_line = 0
    original_column = 0
    name_index = 0

    for line_index, line in enumerate(mappings.split(";")):
        if not line:
            continue

        generated_column = 0
        for raw in line.split(","):
            if not raw:
                continue

            decoded = decode_vlq(raw)
            if not decoded:
                continue

            generated_column += decoded[0]

            if len(decoded) < 4:
                if len(decoded) > 1:
                    logger.debug("Ignoring malformed %d-field segment %r on line %d",
                                 len(decoded), raw, line_index)
                segments.append(Segment(line_index, generated_column))
                continue

            source_index += decoded[1]
            original_line += decoded[2]
            original_column += decoded[3]

            name: Optional[int] = None
            if len(decoded) >= 5:
                name_index += decoded[4]
                name = name_index

            segments.append(Segment(
                generated_line=line_index,
                generated_column=generated_column,
                source_index=source_index,
                original_line=original_line,
                original_column=original_column,
                name_index=name,
            ))

    return segments


@dataclass
class SourceMap:
    """A decoded version 3 source map."""
    sources: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    sources_content: List[Optional[str]] = field(default_factory=list)
    segments: List[Segment] = field(default_factory=list)
    file: Optional[str] = None
    source_root: Optional[str] = None
    released: bool = False

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "SourceMap":
        """Build a SourceMap from a parsed JSON object.

        Raises:
            MappingDecodeError: if the object is not a usable source map.
        """
        if not isinstance(raw, dict):
            raise MappingDecodeError("Source map must be a JSON object")
        if "sections" in raw:
            raise MappingDecodeError("Indexed source maps (sections) are not supported")

        mappings = raw.get("mappings")
        if not isinstance(mappings, str):
            raise MappingDecodeError("Source map has no 'mappings' string")

        version = raw.get("version")
        if version != 3:
            logger.debug("Source map declares version %r, decoding as version 3", version)

        sources = [str(s) if s is not None else "" for s in raw.get("sources") or []]
        content = raw.get("sourcesContent") or []

        return cls(
            sources=sources,
            names=[str(n) for n in raw.get("names") or []],
            sources_content=[c if isinstance(c, str) else None for c in content],
            segments=decode_mappings(mappings),
            file=raw.get("file"),
            source_root=raw.get("sourceRoot") or None,
        )

    def find_segment(self, line: int, column: int, first_match: bool = False) -> Optional[Segment]:
        """Find the segment covering a 0-based generated line and column.

        By default the closest segment wins: the one with the largest generated
        column not past ``column``. ``first_match`` instead returns the first
        qualifying segment in table order.
        """
        best: Optional[Segment] = None
        for seg in self.segments:
            if seg.generated_line != line or seg.generated_column > column:
                continue
            if first_match:
                return seg
            if best is None or seg.generated_column >= best.generated_column:
                best = seg
        return best

    def original_position_for(self, line: int, column: int,
                              first_match: bool = False) -> Optional[Tuple[str, int, int, Optional[str]]]:
        """Map a 1-based generated line and column to the original position.

        Returns:
            (source, line (1-based), column, name) or None when unmapped.
        """
        seg = self.find_segment(line - 1, column, first_match=first_match)
        if seg is None or not seg.has_source:
            return None

        index = seg.source_index or 0
        if index < 0 or index >= len(self.sources):
            return None

        name = None
        if seg.name_index is not None and 0 <= seg.name_index < len(self.names):
            name = self.names[seg.name_index]

        return (self.sources[index], (seg.original_line or 0) + 1, seg.original_column or 0, name)

    def source_content_for(self, source: str) -> Optional[str]:
        """Return embedded content for a source, if the map carries it."""
        try:
            index = self.sources.index(source)
        except ValueError:
            return None
        if index < len(self.sources_content):
            return self.sources_content[index]
        return None

    def release(self) -> None:
        """Drop decoded data held by this map."""
        self.segments = []
        self.sources_content = []
        self.released = True
