#!/usr/bin/env python3
"""
Console Analyzer - Main Entry Point

Command line access to log analysis, source map decoding and rule management.
"""

import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path

# Add console_analyzer to path
sys.path.insert(0, str(Path(__file__).parent))


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on Windows."""
    try:
        print(msg)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'utf-8'
        print(msg.encode(encoding, errors='replace').decode(encoding, errors='replace'))


def load_capture(path: str):
    """Load a capture file: {"logs": [...], "network": [...]}."""
    from console_analyzer.errors import CaptureFormatError
    from console_analyzer.models import LogEntry, NetworkRecord

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise CaptureFormatError(f"{path} is not valid JSON: {e}") from e

    if isinstance(data, list):
        data = {'logs': data}
    if not isinstance(data, dict):
        raise CaptureFormatError(f"{path} must contain an object or a list of logs")

    logs = [LogEntry.from_dict(item) for item in data.get('logs') or []]
    network = [NetworkRecord.from_dict(item) for item in data.get('network') or []]
    return logs, network


def cmd_analyze(args, settings) -> int:
    from console_analyzer.analyzer import LogAnalyzer

    if not args.target:
        safe_print("analyze command requires a capture file")
        return 2

    logs, network = load_capture(args.target[0])
    if args.no_sourcemaps:
        settings.sourcemaps_enabled = False
    if args.rules:
        settings.rules_path = args.rules

    analyzer = LogAnalyzer(settings=settings)
    analyzer.network.extend(network)

    entries = [e for e in logs if e.level == 'error'] if args.errors_only else logs
    try:
        results = asyncio.run(analyzer.analyze_many(entries))
    finally:
        analyzer.resolver.close()

    if args.json:
        output = json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False)
    else:
        output = "\n\n".join(analyzer.generate_report(r) for r in results)
        if not results:
            output = "No log entries to analyze."

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(output)
        safe_print(f"✓ {len(results)} analyses saved to: {args.output}")
    else:
        safe_print(output)
    return 0


def cmd_decode(args, settings) -> int:
    from console_analyzer.vlq import SourceMap

    if not args.target:
        safe_print("decode command requires a source map file")
        return 2

    with open(args.target[0], 'r', encoding='utf-8') as f:
        source_map = SourceMap.from_json(json.load(f))

    mapped = [s for s in source_map.segments if s.has_source]
    lines = {s.generated_line for s in source_map.segments}
    safe_print("SOURCE MAP SUMMARY")
    safe_print("=" * 60)
    safe_print(f"File: {source_map.file or '-'}")
    safe_print(f"Sources: {len(source_map.sources)}")
    safe_print(f"Names: {len(source_map.names)}")
    safe_print(f"Segments: {len(source_map.segments)} ({len(mapped)} mapped)")
    safe_print(f"Generated lines: {len(lines)}")
    embedded = sum(1 for c in source_map.sources_content if c)
    safe_print(f"Embedded sources: {embedded}")

    if source_map.sources:
        safe_print("\nSOURCES:")
        for src in source_map.sources[:20]:
            safe_print(f"  - {src}")
    return 0


def cmd_resolve(args, settings) -> int:
    from console_analyzer.analyzer import LogAnalyzer
    from console_analyzer.models import StackFrame

    if len(args.target) != 3:
        safe_print("resolve command requires: <url> <line> <column>")
        return 2

    url, line, column = args.target
    frame = StackFrame(file_name=url, line_number=int(line), column_number=int(column))
    analyzer = LogAnalyzer(settings=settings)
    try:
        resolved = asyncio.run(analyzer.resolver.resolve_frame(frame))
    finally:
        analyzer.resolver.close()

    if resolved.original is None:
        safe_print(f"✗ No original position for {url}:{line}:{column}")
        return 1

    orig = resolved.original
    safe_print(f"{url}:{line}:{column}")
    safe_print(f"  -> {orig.file_name}:{orig.line_number}:{orig.column_number}"
               + (f" ({orig.name})" if orig.name else ""))
    if orig.source_snippet:
        safe_print("")
        safe_print(orig.source_snippet)
    return 0


def cmd_rules(args, settings) -> int:
    from console_analyzer.signatures import SignatureClassifier

    action = args.target[0] if args.target else 'list'
    classifier = SignatureClassifier()

    if action == 'export':
        text = classifier.export_json()
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(text)
            safe_print(f"✓ {len(classifier)} rules saved to: {args.output}")
        else:
            safe_print(text)
        return 0

    if action == 'import':
        if len(args.target) < 2:
            safe_print("rules import requires a rule file")
            return 2
        with open(args.target[1], 'r', encoding='utf-8') as f:
            count = classifier.import_json(f.read())
        safe_print(f"[OK] {count} rules validated, {len(classifier)} active")
        # Merged set: imported rules ahead of the built-ins
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(classifier.export_json())
            safe_print(f"✓ Merged rule set saved to: {args.output}")
        return 0

    if action == 'list':
        for i, rule in enumerate(classifier.list_rules(), 1):
            safe_print(f"  {i:2d}. [{rule.severity:8s}] {rule.category}")
        return 0

    safe_print(f"Unknown rules action: {action}")
    return 2


def main():
    parser = argparse.ArgumentParser(
        description='Console Analyzer - Explain browser console errors',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Analyze a capture exported from the page
  %(prog)s analyze capture.json

  # Only error entries, as JSON
  %(prog)s analyze capture.json --errors-only --json

  # Summarize a source map
  %(prog)s decode app.min.js.map

  # Resolve a single bundled location
  %(prog)s resolve https://example.com/app.min.js 1 4521

  # Signature rules (import validates; with -o it saves the merged set)
  %(prog)s rules export -o rules.json
  %(prog)s rules import custom.json
  %(prog)s rules import custom.json -o merged.json
        """
    )

    parser.add_argument(
        'command',
        choices=['analyze', 'decode', 'resolve', 'rules', 'test'],
        help='Command to execute'
    )

    parser.add_argument(
        'target',
        nargs='*',
        help='Command arguments (capture file, map file, url/line/column, rules action)'
    )

    parser.add_argument(
        '--no-sourcemaps',
        action='store_true',
        help='Skip source map resolution (faster, bundled locations only)'
    )

    parser.add_argument(
        '--errors-only',
        action='store_true',
        help='Analyze only error-level entries'
    )

    parser.add_argument(
        '--rules',
        help='JSON rule file to load ahead of the built-in rules'
    )

    parser.add_argument(
        '--json',
        action='store_true',
        help='Emit analysis results as JSON'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Output file for results (default: console)'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == 'test':
        print("Running test suite...")
        import pytest
        sys.exit(pytest.main(['tests/', '-v']))

    from console_analyzer.config import Settings
    from console_analyzer.errors import ConsoleAnalyzerError

    settings = Settings.from_env()
    handlers = {
        'analyze': cmd_analyze,
        'decode': cmd_decode,
        'resolve': cmd_resolve,
        'rules': cmd_rules,
    }

    try:
        sys.exit(handlers[args.command](args, settings))
    except (ConsoleAnalyzerError, OSError, ValueError) as e:
        safe_print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
