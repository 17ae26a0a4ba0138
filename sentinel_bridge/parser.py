"""JSONL parsing for exported finding objects.

Each non-empty line is an independent JSON document. A bad line is recorded and
parsing moves on; only an unreadable stream aborts the whole parse.
"""

from __future__ import annotations

import gzip
import json
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Literal

from sentinel_bridge.errors import FindingValidationError, StreamReadError
from sentinel_bridge.models import Finding, utcnow

Compression = Literal["gzip", "deflate", "none", "auto"]

DEFAULT_MAX_LINE_LENGTH = 1024 * 1024
PREVIEW_LIMIT = 200

_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(slots=True)
class LineError:
    line_number: int
    line: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        return f"line {self.line_number}: {self.error}"


@dataclass(slots=True)
class ParseResult:
    findings: list[Finding] = field(default_factory=list)
    errors: list[LineError] = field(default_factory=list)
    total_lines: int = 0

    @property
    def valid_findings(self) -> int:
        return len(self.findings)

    @property
    def invalid_lines(self) -> int:
        return len(self.errors)


def _preview(line: str) -> str:
    if len(line) <= PREVIEW_LIMIT:
        return line
    return f"{line[:PREVIEW_LIMIT]}..."


def detect_compression(data: bytes) -> Compression:
    if data[:2] == _GZIP_MAGIC:
        return "gzip"
    # zlib header: CMF 0x78 with a checksum-valid FLG byte
    if len(data) >= 2 and data[0] == 0x78 and (data[0] * 256 + data[1]) % 31 == 0:
        return "deflate"
    return "none"


def decompress(data: bytes, compression: Compression = "auto") -> bytes:
    if compression == "auto":
        compression = detect_compression(data)
    try:
        if compression == "gzip":
            return gzip.decompress(data)
        if compression == "deflate":
            return zlib.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise StreamReadError(f"Failed to decompress {compression} stream: {exc}") from exc
    return data


class JSONLParser:
    """Turns JSONL text into findings plus per-line errors."""

    def __init__(
        self,
        *,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        validate_schema: bool = True,
        encoding: str = "utf-8",
    ) -> None:
        self.max_line_length = max_line_length
        self.validate_schema = validate_schema
        self.encoding = encoding

    def parse_line(self, line: str) -> Finding:
        if len(line) > self.max_line_length:
            raise FindingValidationError(
                f"Line exceeds maximum length of {self.max_line_length} characters"
            )
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as exc:
            raise FindingValidationError(f"Invalid JSON: {exc.msg}") from exc
        except (ValueError, RecursionError) as exc:
            # oversized integer literals and pathological nesting
            raise FindingValidationError(f"Invalid JSON: {exc}") from exc
        return Finding.from_dict(parsed, raw_json=line, validate=self.validate_schema)

    def parse_lines(self, lines: Iterable[str]) -> ParseResult:
        result = ParseResult()
        for line_number, raw_line in enumerate(lines, start=1):
            line = raw_line.strip()
            if not line:
                continue
            result.total_lines += 1
            try:
                result.findings.append(self.parse_line(line))
            except FindingValidationError as exc:
                result.errors.append(
                    LineError(line_number=line_number, line=_preview(line), error=exc.message)
                )
        return result

    def parse_text(self, text: str) -> ParseResult:
        return self.parse_lines(text.split("\n"))

    def parse_bytes(self, data: bytes, compression: Compression = "auto") -> ParseResult:
        """Decompress (if needed), decode and parse a whole exported object."""
        plain = decompress(data, compression)
        try:
            text = plain.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise StreamReadError(f"Stream is not valid {self.encoding}: {exc}") from exc
        return self.parse_text(text)
