"""Data model shared by the resolver, classifier, correlator and analyzer.

Records arrive from the page capture layer as JSON objects with camelCase keys.
Every dataclass here can be built from such a dict and rendered back to one.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from .errors import CaptureFormatError

LOG_LEVELS = ("trace", "log", "info", "warn", "error", "debug")
NETWORK_OUTCOMES = ("pending", "success", "error", "timeout", "aborted")
SEVERITIES = ("low", "medium", "high", "critical")


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    if not isinstance(data, dict):
        raise CaptureFormatError(f"{kind} record must be an object, got {type(data).__name__}")
    if key not in data or data[key] is None:
        raise CaptureFormatError(f"{kind} record is missing '{key}'")
    return data[key]


def _as_int(value: Any, key: str, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CaptureFormatError(f"{kind} field '{key}' is not a number: {value!r}")


def _optional_int(value: Any, key: str, kind: str) -> Optional[int]:
    if value is None:
        return None
    return _as_int(value, key, kind)


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class OriginalLocation:
    """A stack location resolved back to the original source."""
    file_name: str
    line_number: int
    column_number: int
    source_snippet: Optional[str] = None
    name: Optional[str] = None  # Symbol name from the map's names table

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OriginalLocation":
        return cls(
            file_name=str(_require(data, "fileName", "original location")),
            line_number=_as_int(data.get("lineNumber", 0), "lineNumber", "original location"),
            column_number=_as_int(data.get("columnNumber", 0), "columnNumber", "original location"),
            source_snippet=data.get("source") if data.get("source") is not None else data.get("sourceSnippet"),
            name=data.get("name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "fileName": self.file_name,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
            "source": self.source_snippet,
            "name": self.name,
        })


@dataclass(frozen=True)
class StackFrame:
    """One frame of a captured stack trace, in bundled (generated) coordinates."""
    file_name: str
    line_number: int
    column_number: int
    function_name: str = "<anonymous>"
    raw_source_line: str = ""
    original: Optional[OriginalLocation] = None

    @property
    def is_resolved(self) -> bool:
        return self.original is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StackFrame":
        original = data.get("original") if isinstance(data, dict) else None
        return cls(
            file_name=str(_require(data, "fileName", "stack frame")),
            line_number=_as_int(_require(data, "lineNumber", "stack frame"), "lineNumber", "stack frame"),
            column_number=_as_int(data.get("columnNumber", 0), "columnNumber", "stack frame"),
            function_name=data.get("functionName") or "<anonymous>",
            raw_source_line=data.get("source") or data.get("rawSourceLine") or "",
            original=OriginalLocation.from_dict(original) if original else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "fileName": self.file_name,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
            "functionName": self.function_name,
            "source": self.raw_source_line,
            "original": self.original.to_dict() if self.original else None,
        })


@dataclass(frozen=True)
class LogEntry:
    """A single captured console event. Read-only to the analyzer."""
    id: str
    level: str
    message: str
    timestamp: int  # Epoch milliseconds
    args: List[Any] = field(default_factory=list)
    stack_trace: List[StackFrame] = field(default_factory=list)
    related_network_ids: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        """Build a log entry from a capture record.

        ``stackTrace`` may be a list of frame objects or the raw stack string
        reported by the browser, in which case it is parsed here.
        """
        level = str(_require(data, "level", "log")).lower()
        if level not in LOG_LEVELS:
            raise CaptureFormatError(f"Unknown log level: {level}")

        raw_stack = data.get("stackTrace") or []
        if isinstance(raw_stack, str):
            from .stack_parser import parse_stack_trace
            frames = parse_stack_trace(raw_stack)
        elif isinstance(raw_stack, list):
            frames = [StackFrame.from_dict(f) for f in raw_stack]
        else:
            raise CaptureFormatError("log field 'stackTrace' must be a list or a string")

        related = data.get("relatedNetworkIds", data.get("relatedNetworkRequestIds"))
        return cls(
            id=str(_require(data, "id", "log")),
            level=level,
            message=str(data.get("message", "")),
            timestamp=_as_int(_require(data, "timestamp", "log"), "timestamp", "log"),
            args=list(data.get("args") or []),
            stack_trace=frames,
            related_network_ids=[str(r) for r in related] if related else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "level": self.level,
            "message": self.message,
            "args": self.args,
            "timestamp": self.timestamp,
            "stackTrace": [f.to_dict() for f in self.stack_trace],
            "relatedNetworkIds": self.related_network_ids,
        })


@dataclass(frozen=True)
class NetworkRecord:
    """A captured fetch/XHR request. Read-only to the analyzer."""
    id: str
    method: str
    url: str
    start_time: int
    outcome: str = "pending"
    end_time: Optional[int] = None
    status: Optional[int] = None
    status_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def settled_time(self) -> int:
        """Completion time when known, start time otherwise."""
        return self.end_time if self.end_time is not None else self.start_time

    @property
    def failed(self) -> bool:
        return self.outcome in ("error", "timeout") or (self.status is not None and self.status >= 400)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkRecord":
        record_id = _require(data, "id", "network")
        outcome = str(data.get("outcome") or data.get("requestStatus") or "pending").lower()
        if outcome not in NETWORK_OUTCOMES:
            raise CaptureFormatError(f"Unknown network outcome: {outcome}")

        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message") or str(error)
        return cls(
            id=str(record_id),
            method=str(data.get("method") or "GET").upper(),
            url=str(_require(data, "url", "network")),
            start_time=_as_int(_require(data, "startTime", "network"), "startTime", "network"),
            outcome=outcome,
            end_time=_optional_int(data.get("endTime"), "endTime", "network"),
            status=_optional_int(data.get("status"), "status", "network"),
            status_text=data.get("statusText"),
            error=str(error) if error else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "method": self.method,
            "url": self.url,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "status": self.status,
            "statusText": self.status_text,
            "outcome": self.outcome,
            "error": self.error,
        })


@dataclass
class CodeContext:
    """Source location highlighted by an analysis."""
    file_name: str
    line_number: int
    column_number: int
    source_preview: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
            "sourcePreview": list(self.source_preview),
        }


@dataclass
class AnalysisResult:
    """Diagnosis of one log entry. Built fresh for every analysis."""
    log_entry: LogEntry
    severity: str
    category: Optional[str] = None
    causes: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    related_network: List[NetworkRecord] = field(default_factory=list)
    code_context: Optional[CodeContext] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "logEntry": self.log_entry.to_dict(),
            "category": self.category,
            "causes": list(self.causes),
            "suggestions": list(self.suggestions),
            "relatedNetwork": [r.to_dict() for r in self.related_network],
            "severity": self.severity,
            "codeContext": self.code_context.to_dict() if self.code_context else None,
        })
