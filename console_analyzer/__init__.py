"""Console Analyzer package.

This package explains captured browser console entries, including:
- Source map resolution of minified stack frames (VLQ mappings, inline maps)
- Bounded LRU caching of decoded maps with negative caching
- Error signature classification with user-extensible rules
- Correlation with failed network requests in a time window
- Ranked causes, suggestions, severity and code context per entry
"""
from .analyzer import LogAnalyzer
from .cache import ResolutionCache, ABSENT, MISS, MAX_CACHE_SIZE
from .config import Settings, TIME_WINDOW_MS
from .correlation import correlate
from .errors import (
    ConsoleAnalyzerError,
    MappingDecodeError,
    RuleImportError,
    CaptureFormatError,
)
from .models import (
    StackFrame,
    OriginalLocation,
    LogEntry,
    NetworkRecord,
    CodeContext,
    AnalysisResult,
)
from .network_window import NetworkWindow
from .signatures import SignatureRule, SignatureClassifier
from .source_resolver import SourceResolver, HttpFetcher
from .stack_parser import parse_stack_trace
from .vlq import SourceMap, Segment, decode_vlq, encode_vlq, decode_mappings

__all__ = [
    # Analyzer
    "LogAnalyzer",
    "AnalysisResult",
    "CodeContext",
    # Records
    "StackFrame",
    "OriginalLocation",
    "LogEntry",
    "NetworkRecord",
    "parse_stack_trace",
    # Source maps
    "SourceResolver",
    "HttpFetcher",
    "ResolutionCache",
    "ABSENT",
    "MISS",
    "MAX_CACHE_SIZE",
    "SourceMap",
    "Segment",
    "decode_vlq",
    "encode_vlq",
    "decode_mappings",
    # Classification and correlation
    "SignatureRule",
    "SignatureClassifier",
    "NetworkWindow",
    "correlate",
    "TIME_WINDOW_MS",
    # Configuration and errors
    "Settings",
    "ConsoleAnalyzerError",
    "MappingDecodeError",
    "RuleImportError",
    "CaptureFormatError",
]

__version__ = "1.0.0"
