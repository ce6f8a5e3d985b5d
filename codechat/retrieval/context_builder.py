"""
Context builder.

Turns retrieved chunks into a markdown context for the answering model,
within a token budget (~4 chars per token). Blocks are added whole or not
at all; the first block that does not fit stops the build and marks the
result truncated.

Layout:
    ## Relevant Source Code            (header)
    ## <path>                          (one section per file, grouped mode)
    ### [<path>:<start>-<end>]         (one block per chunk)
    **<kind>**: `<symbol>`
    > <contextual description>
    ```<language>
    <content>
    ```
    ---                                (footer: truncation note + citation format)

build_minimal_context (file list with symbols) and build_file_context
(one whole file in line order) cover the small-budget and single-file cases.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Sequence

from codechat.config import CHARS_PER_TOKEN, CONTEXT_FOOTER_RESERVE_CHARS, DEFAULT_CONTEXT_MAX_TOKENS
from codechat.parsing.chunker import estimate_tokens
from codechat.retrieval.scoring import RetrievedChunk

EMPTY_CONTEXT = "No relevant code found in the repository."


@dataclass
class ContextResult:
    context: str
    chunks_included: int
    chunks_total: int
    estimated_tokens: int
    truncated: bool
    files: List[str] = field(default_factory=list)
    included: List[RetrievedChunk] = field(default_factory=list)


def format_chunk(chunk: RetrievedChunk, include_scores: bool = False) -> str:
    """Render one chunk block."""
    lines = [f"### [{chunk.file_path}:{chunk.start_line}-{chunk.end_line}]"]
    if chunk.symbol_name:
        lines.append(f"**{chunk.chunk_type}**: `{chunk.symbol_name}`")
    if chunk.context:
        lines.append("")
        lines.append(f"> {chunk.context}")
    if include_scores:
        lines.append(f"_Relevance: {chunk.score * 100:.0f}%_")
    lines.append("")
    lines.append(f"```{chunk.language}")
    lines.append(chunk.content)
    lines.append("```")
    lines.append("")
    return "\n".join(lines) + "\n"


def group_chunks_by_file(chunks: Sequence[RetrievedChunk]) -> "OrderedDict[str, List[RetrievedChunk]]":
    """Files in first-appearance order, chunks within a file by start line."""
    grouped: "OrderedDict[str, List[RetrievedChunk]]" = OrderedDict()
    for chunk in chunks:
        grouped.setdefault(chunk.file_path, []).append(chunk)
    for file_chunks in grouped.values():
        file_chunks.sort(key=lambda c: c.start_line)
    return grouped


class ContextBuilder:
    """Assemble retrieved chunks into budgeted markdown context."""

    def __init__(
        self,
        max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
        group_by_file: bool = True,
        include_scores: bool = False,
    ):
        self.max_tokens = max_tokens
        self.group_by_file = group_by_file
        self.include_scores = include_scores

    def build(self, chunks: Sequence[RetrievedChunk]) -> ContextResult:
        if not chunks:
            return ContextResult(
                context=EMPTY_CONTEXT,
                chunks_included=0,
                chunks_total=0,
                estimated_tokens=estimate_tokens(EMPTY_CONTEXT),
                truncated=False,
            )

        header = "\n".join([
            "## Relevant Source Code",
            "",
            f"Found {len(chunks)} relevant code section(s) in the repository:",
            "",
        ])
        # Two newlines join header, body and footer
        available = self.max_tokens * CHARS_PER_TOKEN - len(header) - CONTEXT_FOOTER_RESERVE_CHARS - 2

        if self.group_by_file:
            sections, included, truncated = self._format_grouped(chunks, available)
        else:
            sections, included, truncated = self._format_sequential(chunks, available)

        footer_lines = ["---"]
        if truncated:
            footer_lines.append(f"_Note: Showing {len(included)}/{len(chunks)} sections (token limit reached)_")
            footer_lines.append("")
        footer_lines.append("Use this information to answer accurately.")
        footer_lines.append("Always cite files using the format `[path:lines]`.")

        context = "\n".join([header, "\n".join(sections), "\n".join(footer_lines)])

        return ContextResult(
            context=context,
            chunks_included=len(included),
            chunks_total=len(chunks),
            estimated_tokens=estimate_tokens(context),
            truncated=truncated,
            files=list(dict.fromkeys(c.file_path for c in included)),
            included=included,
        )

    def _format_grouped(self, chunks, available: int):
        sections: List[str] = []
        included: List[RetrievedChunk] = []
        used = 0
        truncated = False

        for file_path, file_chunks in group_chunks_by_file(chunks).items():
            separator = 1 if sections else 0
            section = f"## {file_path}\n\n"
            section_chunks = []

            for chunk in file_chunks:
                block = format_chunk(chunk, self.include_scores)
                if used + separator + len(section) + len(block) > available:
                    truncated = True
                    break
                section += block
                section_chunks.append(chunk)

            if section_chunks:
                sections.append(section)
                included.extend(section_chunks)
                used += separator + len(section)
            if truncated:
                break

        return sections, included, truncated

    def _format_sequential(self, chunks, available: int):
        sections: List[str] = []
        included: List[RetrievedChunk] = []
        used = 0

        for chunk in chunks:
            separator = 1 if sections else 0
            block = format_chunk(chunk, self.include_scores)
            if used + separator + len(block) > available:
                return sections, included, True
            sections.append(block)
            included.append(chunk)
            used += separator + len(block)

        return sections, included, False


def build_code_context(
    chunks: Sequence[RetrievedChunk],
    max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    group_by_file: bool = True,
    include_scores: bool = False,
) -> ContextResult:
    """Convenience function."""
    return ContextBuilder(max_tokens, group_by_file, include_scores).build(chunks)


def build_minimal_context(chunks: Sequence[RetrievedChunk], max_symbols: int = 5) -> str:
    """
    File list with up to max_symbols symbol names per file.

    For very small budgets: tells the model where to look without any code.
    """
    if not chunks:
        return EMPTY_CONTEXT

    lines = ["## Relevant Files", ""]
    for file_path, file_chunks in group_chunks_by_file(chunks).items():
        symbols = [f"`{c.symbol_name}`" for c in file_chunks if c.symbol_name][:max_symbols]
        suffix = f": {', '.join(symbols)}" if symbols else ""
        lines.append(f"- **{file_path}**{suffix}")
    return "\n".join(lines)


def build_file_context(chunks: Sequence[RetrievedChunk], file_path: str) -> str:
    """Every chunk of one file, in line order, without a token budget."""
    file_chunks = sorted((c for c in chunks if c.file_path == file_path), key=lambda c: c.start_line)
    if not file_chunks:
        return f"No content found for {file_path}"

    lines = [f"## {file_path}", ""]
    for chunk in file_chunks:
        if chunk.symbol_name:
            lines.append(f"### {chunk.chunk_type}: `{chunk.symbol_name}` (lines {chunk.start_line}-{chunk.end_line})")
        else:
            lines.append(f"### Lines {chunk.start_line}-{chunk.end_line}")
        lines.append("")
        lines.append(f"```{chunk.language}")
        lines.append(chunk.content)
        lines.append("```")
        lines.append("")
    return "\n".join(lines)
