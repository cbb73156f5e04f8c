"""Diagnosis of captured console entries.

Combines source map resolution, signature classification and network
correlation into a single ranked AnalysisResult per log entry.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import replace
from typing import List, Optional, Iterable, Tuple

from .correlation import correlate
from .config import Settings
from .models import (
    LogEntry,
    NetworkRecord,
    StackFrame,
    AnalysisResult,
    CodeContext,
)
from .network_window import NetworkWindow
from .signatures import SignatureClassifier, SignatureRule
from .source_resolver import SourceResolver, HttpFetcher
from .cache import ResolutionCache

logger = logging.getLogger("console_analyzer.analyzer")


def _dedupe(items: Iterable[str]) -> List[str]:
    """Drop exact duplicates, keeping first-seen order."""
    seen = set()
    result: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class LogAnalyzer:
    """Explains why a console entry happened."""

    # Guidance attached for specific HTTP statuses of related requests
    STATUS_GUIDANCE = {
        401: ('The authentication token is missing or expired (401)',
              'Check the authentication state and sign in again if needed'),
        403: ('The resource is not accessible with the current permissions (403)',
              'Check the access permissions for this resource'),
        404: ('The requested resource does not exist (404)',
              'Check that the API endpoint exists: {url}'),
    }

    # Fallbacks when nothing more specific is known
    LEVEL_GUIDANCE = {
        'error': (['An unexpected error occurred'],
                  ['Check the stack trace', 'Validate the input data']),
        'warn': (['A potential problem was detected'],
                 ['Review the warning message']),
    }
    DEFAULT_GUIDANCE = (['Informational message, no failure detected'],
                        ['No action needed unless the message is unexpected'])

    def __init__(self, resolver: Optional[SourceResolver] = None,
                 classifier: Optional[SignatureClassifier] = None,
                 network: Optional[NetworkWindow] = None,
                 settings: Optional[Settings] = None):
        """
        Initialize the analyzer.

        Args:
            resolver: Source map resolver; built from settings if omitted.
            classifier: Signature classifier; built-in rules if omitted.
            network: Window of recent network records consulted by analyze().
            settings: Tunables; defaults to Settings().
        """
        self.settings = settings or Settings()

        if resolver is None:
            resolver = SourceResolver(
                fetcher=HttpFetcher(timeout=self.settings.http_timeout),
                cache=ResolutionCache(self.settings.cache_size),
                enabled=self.settings.sourcemaps_enabled,
                context_lines=self.settings.context_lines,
                first_match=self.settings.first_match_lookup,
            )
        self.resolver = resolver
        self.classifier = classifier or SignatureClassifier()
        self.network = network or NetworkWindow(self.settings.max_network_records)

        if self.settings.rules_path:
            with open(self.settings.rules_path, 'r', encoding='utf-8') as f:
                count = self.classifier.import_json(f.read())
            logger.info("Loaded %d rules from %s", count, self.settings.rules_path)

    # Analysis

    async def analyze(self, entry: LogEntry,
                      network: Optional[Iterable[NetworkRecord]] = None) -> AnalysisResult:
        """Diagnose one log entry.

        Args:
            entry: The captured log entry.
            network: Records to correlate against; defaults to the analyzer's
                network window.
        """
        resolved_frames = await self.resolver.resolve_frames(entry.stack_trace)
        resolved_entry = replace(entry, stack_trace=resolved_frames)

        rule = self.classifier.classify(entry.message)

        window = list(network) if network is not None else self.network.records()
        related = correlate(entry, window, self.settings.window_ms)

        severity = self.determine_severity(entry, rule, related)
        causes, suggestions = self.build_guidance(entry, rule, related)

        return AnalysisResult(
            log_entry=resolved_entry,
            severity=severity,
            category=rule.category if rule else None,
            causes=causes,
            suggestions=suggestions,
            related_network=related,
            code_context=self.extract_code_context(resolved_frames),
        )

    async def analyze_many(self, entries: List[LogEntry],
                           network: Optional[Iterable[NetworkRecord]] = None) -> List[AnalysisResult]:
        """Diagnose several entries; results follow input order."""
        window = list(network) if network is not None else None
        return list(await asyncio.gather(*(self.analyze(e, window) for e in entries)))

    async def analyze_errors(self, entries: List[LogEntry],
                             network: Optional[Iterable[NetworkRecord]] = None) -> List[AnalysisResult]:
        """Diagnose only the error-level entries."""
        return await self.analyze_many([e for e in entries if e.level == 'error'], network)

    def analyze_sync(self, entry: LogEntry,
                     network: Optional[Iterable[NetworkRecord]] = None) -> AnalysisResult:
        """Blocking wrapper around analyze() for callers without an event loop."""
        return asyncio.run(self.analyze(entry, network))

    @staticmethod
    def determine_severity(entry: LogEntry, rule: Optional[SignatureRule],
                           related: List[NetworkRecord]) -> str:
        if rule is not None:
            return rule.severity

        if entry.level == 'error':
            # Failed requests nearby make an error more serious
            if any(r.outcome == 'error' for r in related):
                return 'high'
            return 'medium'

        return 'low'

    def build_guidance(self, entry: LogEntry, rule: Optional[SignatureRule],
                       related: List[NetworkRecord]) -> Tuple[List[str], List[str]]:
        """Merge rule and network guidance, deduplicated in first-seen order."""
        causes: List[str] = []
        suggestions: List[str] = []

        if rule is not None:
            causes.extend(rule.causes)
            suggestions.extend(rule.suggestions)

        for record in related:
            status = record.status
            if record.outcome == 'error' or (status is not None and status >= 400):
                label = f"{record.method} {record.url}"
                if status:
                    label += f" ({status})"
                causes.append(f"Network request failed: {label}")

                if status in self.STATUS_GUIDANCE:
                    cause, suggestion = self.STATUS_GUIDANCE[status]
                    causes.append(cause)
                    suggestions.append(suggestion.format(url=record.url))
                elif status is not None and status >= 500:
                    causes.append(f"The server failed to handle the request ({status})")
                    suggestions.append('Check the server status and logs')

            if record.outcome == 'timeout':
                causes.append(f"Request timed out: {record.url}")
                suggestions.append('Check the server response time')
                suggestions.append('Check the network connection')

        if not causes:
            generic_causes, generic_suggestions = self.LEVEL_GUIDANCE.get(entry.level, self.DEFAULT_GUIDANCE)
            causes.extend(generic_causes)
            suggestions.extend(generic_suggestions)

        return _dedupe(causes), _dedupe(suggestions)

    @staticmethod
    def extract_code_context(frames: List[StackFrame]) -> Optional[CodeContext]:
        """Code context from the first frame with original source text.

        Falls back to the first frame's bundled location.
        """
        for frame in frames:
            if frame.original is not None and frame.original.source_snippet:
                return CodeContext(
                    file_name=frame.original.file_name,
                    line_number=frame.original.line_number,
                    column_number=frame.original.column_number,
                    source_preview=frame.original.source_snippet.split('\n'),
                )

        if frames:
            first = frames[0]
            return CodeContext(
                file_name=first.file_name,
                line_number=first.line_number,
                column_number=first.column_number,
            )

        return None

    # Rule management

    def add_rule(self, rule: SignatureRule) -> None:
        self.classifier.add_rule(rule)

    def remove_rule(self, category: str) -> int:
        return self.classifier.remove_rule(category)

    def list_rules(self) -> List[SignatureRule]:
        return self.classifier.list_rules()

    def reset_rules(self) -> None:
        self.classifier.reset_rules()

    def export_rules(self) -> str:
        return self.classifier.export_json()

    def import_rules(self, text: str, replace: bool = False) -> int:
        return self.classifier.import_json(text, replace=replace)

    # Reporting

    def generate_report(self, result: AnalysisResult) -> str:
        """Generate a text report from an AnalysisResult."""
        entry = result.log_entry
        lines = []
        lines.append("=" * 70)
        lines.append("CONSOLE LOG ANALYSIS")
        lines.append("=" * 70)

        try:
            when = datetime.datetime.fromtimestamp(entry.timestamp / 1000.0)
            lines.append(f"Time: {when.isoformat(timespec='milliseconds')}")
        except (OverflowError, OSError, ValueError):
            lines.append(f"Time: {entry.timestamp}")
        lines.append(f"Level: {entry.level.upper()}")
        lines.append(f"Message: {entry.message}")
        lines.append(f"Severity: {result.severity.upper()}")
        if result.category:
            lines.append(f"Category: {result.category}")
        lines.append("")

        if result.causes:
            lines.append("POSSIBLE CAUSES:")
            lines.append("-" * 40)
            for cause in result.causes:
                lines.append(f"  • {cause}")
            lines.append("")

        if result.suggestions:
            lines.append("SUGGESTIONS:")
            lines.append("-" * 40)
            for i, suggestion in enumerate(result.suggestions, 1):
                lines.append(f"  {i}. {suggestion}")
            lines.append("")

        if result.related_network:
            lines.append("RELATED NETWORK REQUESTS:")
            lines.append("-" * 40)
            for record in result.related_network:
                status = record.status if record.status is not None else '-'
                marker = "✗" if record.failed else "•"
                lines.append(f"  {marker} {record.method} {record.url} [{record.outcome}, {status}]")
                if record.error:
                    lines.append(f"      Error: {record.error}")
            lines.append("")

        if entry.stack_trace:
            lines.append("STACK TRACE:")
            lines.append("-" * 40)
            for frame in entry.stack_trace:
                lines.append(f"  at {frame.function_name} ({frame.file_name}:{frame.line_number}:{frame.column_number})")
                if frame.original:
                    orig = frame.original
                    lines.append(f"     -> {orig.file_name}:{orig.line_number}:{orig.column_number}")
            lines.append("")

        ctx = result.code_context
        if ctx:
            lines.append("CODE CONTEXT:")
            lines.append("-" * 40)
            lines.append(f"  {ctx.file_name}:{ctx.line_number}:{ctx.column_number}")
            if ctx.source_preview:
                # Preview is centred on the target line where the file allows
                first_line = max(1, ctx.line_number - self.settings.context_lines)
                for offset, text in enumerate(ctx.source_preview):
                    number = first_line + offset
                    pointer = ">" if number == ctx.line_number else " "
                    lines.append(f"  {pointer}{number:5d} | {text}")
            lines.append("")

        return "\n".join(lines)
