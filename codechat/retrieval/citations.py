"""
Citations.

Format:  [<path>:<start>-<end>]  or  [<path>:<line>]  (start == end)

Path segments may carry route groups and dynamic segments, e.g.
[app/(dashboard)/chat/[conversationId]/page.tsx:1-20]. Root-level files
such as [package.json:1-20] only count when they carry a line number, so
bracketed prose like [README.md] is not mistaken for a citation. A match
immediately followed by "(" is a markdown link and is skipped.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

_SEGMENT = r"(?:[\w\-.()@+~]|\[[\w\-.()@+~]+\])+"

CITATION_REGEX = re.compile(
    r"\[(" + _SEGMENT + r"(?:/" + _SEGMENT + r")*\.[a-zA-Z0-9]+)(?::(\d+)(?:-(\d+))?)?\]"
)


@dataclass
class Citation:
    """A source reference for one chunk included in a built context."""
    file: str
    start_line: int
    end_line: int
    symbol: Optional[str] = None

    def __str__(self) -> str:
        return format_location(self.file, self.start_line, self.end_line)


@dataclass
class ParsedCitation:
    """A citation found in answer text."""
    path: str
    line: Optional[int]
    end_line: Optional[int]
    original: str
    start_index: int
    end_index: int

    @property
    def line_range(self) -> Optional[Tuple[int, int]]:
        if self.line is None:
            return None
        return self.line, self.end_line if self.end_line is not None else self.line


def format_location(path: str, start_line: int, end_line: int) -> str:
    if start_line == end_line:
        return f"[{path}:{start_line}]"
    return f"[{path}:{start_line}-{end_line}]"


def format_citation(chunk) -> str:
    """Citation text for a chunk (anything with file_path/start_line/end_line)."""
    return format_location(chunk.file_path, chunk.start_line, chunk.end_line)


def extract_citations(included_chunks: Sequence) -> List[Citation]:
    """One Citation per included chunk, in context order."""
    return [
        Citation(
            file=chunk.file_path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            symbol=chunk.symbol_name,
        )
        for chunk in included_chunks
    ]


def parse_citations(text: str) -> List[ParsedCitation]:
    citations = []
    for match in CITATION_REGEX.finditer(text or ""):
        if text[match.end():match.end() + 1] == "(":
            continue
        line, end_line = match.group(2), match.group(3)
        if "/" not in match.group(1) and not line:
            continue
        citations.append(ParsedCitation(
            path=match.group(1),
            line=int(line) if line else None,
            end_line=int(end_line) if end_line else None,
            original=match.group(0),
            start_index=match.start(),
            end_index=match.end(),
        ))
    return citations


def split_content_by_citations(text: str) -> List[Union[str, ParsedCitation]]:
    """Interleave plain text segments with parsed citations."""
    citations = parse_citations(text)
    if not citations:
        return [text]

    segments: List[Union[str, ParsedCitation]] = []
    last = 0
    for citation in citations:
        if citation.start_index > last:
            segments.append(text[last:citation.start_index])
        segments.append(citation)
        last = citation.end_index
    if last < len(text):
        segments.append(text[last:])
    return segments
