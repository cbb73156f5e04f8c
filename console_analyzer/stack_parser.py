"""Parse browser stack trace strings into StackFrame records."""
from __future__ import annotations

import re
from typing import List, Optional

from .models import StackFrame

# Chrome/Edge: "    at functionName (fileName:line:column)" or "    at fileName:line:column"
CHROME_FRAME = re.compile(r'^\s*at\s+(?:(.+?)\s+\()?(.+):(\d+):(\d+)\)?$')
# Firefox/Safari: "functionName@fileName:line:column"
FIREFOX_FRAME = re.compile(r'^(.*)@(.+):(\d+):(\d+)$')


def parse_stack_line(line: str) -> Optional[StackFrame]:
    """Parse a single stack line, or return None if it is not a frame."""
    match = CHROME_FRAME.match(line) or FIREFOX_FRAME.match(line)
    if not match:
        return None

    return StackFrame(
        file_name=match.group(2),
        line_number=int(match.group(3)),
        column_number=int(match.group(4)),
        function_name=match.group(1) or "<anonymous>",
        raw_source_line=line.strip(),
    )


def parse_stack_trace(stack: Optional[str]) -> List[StackFrame]:
    """Parse an ``Error.stack`` string. Lines that are not frames are skipped."""
    if not stack:
        return []

    frames: List[StackFrame] = []
    for line in stack.splitlines():
        frame = parse_stack_line(line)
        if frame is not None:
            frames.append(frame)
    return frames
