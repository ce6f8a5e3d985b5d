# FILE: tests/test_context_builder.py
"""
Tests for context assembly: budget, truncation, grouping and ordering.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from codechat.retrieval.context_builder import (
    EMPTY_CONTEXT,
    ContextBuilder,
    build_code_context,
    build_file_context,
    build_minimal_context,
    format_chunk,
    group_chunks_by_file,
)
from codechat.retrieval.scoring import RetrievedChunk


def _chunk(path, start, end=None, content="code", symbol=None, score=0.5, context=None):
    return RetrievedChunk(
        id=f"{path}:{start}",
        file_path=path,
        start_line=start,
        end_line=end if end is not None else start + 9,
        content=content,
        language="typescript",
        chunk_type="function",
        symbol_name=symbol,
        score=score,
        context=context,
    )


class TestFormatChunk:
    def test_block_layout(self):
        block = format_chunk(_chunk("src/a.ts", 1, 10, content="return 1;", symbol="alpha"))

        assert block.startswith("### [src/a.ts:1-10]\n**function**: `alpha`\n")
        assert "```typescript\nreturn 1;\n```" in block
        assert block.endswith("\n")

    def test_context_and_scores(self):
        block = format_chunk(_chunk("src/a.ts", 1, context="Handles login", score=0.85), include_scores=True)
        assert "> Handles login" in block
        assert "_Relevance: 85%_" in block
        assert "**function**" not in block


class TestGrouping:
    def test_first_appearance_order_and_line_sort(self):
        chunks = [_chunk("src/b.ts", 50), _chunk("src/a.ts", 1), _chunk("src/b.ts", 5)]
        grouped = group_chunks_by_file(chunks)

        assert list(grouped) == ["src/b.ts", "src/a.ts"]
        assert [c.start_line for c in grouped["src/b.ts"]] == [5, 50]


class TestBuild:
    """Tests for the assembled context."""

    def test_empty(self):
        result = build_code_context([])
        assert result.context == EMPTY_CONTEXT
        assert result.chunks_included == 0
        assert result.chunks_total == 0
        assert not result.truncated

    def test_everything_fits(self):
        chunks = [_chunk("src/b.ts", 40), _chunk("src/a.ts", 1), _chunk("src/b.ts", 1)]
        result = build_code_context(chunks)

        assert not result.truncated
        assert result.chunks_included == result.chunks_total == 3
        assert result.files == ["src/b.ts", "src/a.ts"]
        assert result.context.startswith("## Relevant Source Code")
        assert "Found 3 relevant code section(s)" in result.context
        assert result.context.index("## src/b.ts") < result.context.index("## src/a.ts")
        assert result.context.index("[src/b.ts:1-10]") < result.context.index("[src/b.ts:40-49]")
        assert "`[path:lines]`" in result.context
        assert "_Note:" not in result.context

    def test_budget_truncates_whole_blocks(self):
        chunks = [_chunk(f"src/file{i}.ts", 1, content="x" * 400) for i in range(3)]
        result = ContextBuilder(max_tokens=200).build(chunks)

        assert result.truncated
        assert result.chunks_included == 1
        assert result.chunks_total == 3
        assert result.estimated_tokens <= 200
        assert "_Note: Showing 1/3 sections (token limit reached)_" in result.context
        assert "x" * 400 in result.context

    def test_included_matches_rendered(self):
        chunks = [_chunk(f"src/f{i}.ts", 1, content="y" * 300) for i in range(6)]
        result = ContextBuilder(max_tokens=400).build(chunks)

        assert 0 < result.chunks_included < result.chunks_total
        for chunk in chunks:
            rendered = f"[{chunk.file_path}:1-10]" in result.context
            assert rendered == (chunk in result.included)
        assert result.estimated_tokens <= 400

    def test_oversized_first_block(self):
        result = ContextBuilder(max_tokens=100).build([_chunk("src/a.ts", 1, content="z" * 5000)])

        assert result.truncated
        assert result.chunks_included == 0
        assert result.files == []
        assert "z" * 100 not in result.context

    def test_sequential_mode_keeps_input_order(self):
        chunks = [_chunk("src/b.ts", 40), _chunk("src/a.ts", 1), _chunk("src/b.ts", 1)]
        result = build_code_context(chunks, group_by_file=False)

        assert "## src/" not in result.context
        positions = [result.context.index(f"[{c.file_path}:{c.start_line}-") for c in chunks]
        assert positions == sorted(positions)


class TestMinimalAndFileContext:
    """Tests for the file-list and single-file renderings."""

    def test_minimal_lists_files_with_symbols(self):
        chunks = [
            _chunk("src/b.ts", 20, symbol="beta"),
            _chunk("src/a.ts", 1),
            _chunk("src/b.ts", 1, symbol="alpha"),
        ]
        assert build_minimal_context(chunks) == (
            "## Relevant Files\n"
            "\n"
            "- **src/b.ts**: `alpha`, `beta`\n"
            "- **src/a.ts**"
        )

    def test_minimal_caps_symbols_per_file(self):
        chunks = [_chunk("src/big.ts", i * 10, symbol=f"fn{i}") for i in range(8)]
        line = build_minimal_context(chunks).splitlines()[-1]
        assert line == "- **src/big.ts**: `fn0`, `fn1`, `fn2`, `fn3`, `fn4`"

    def test_minimal_empty(self):
        assert build_minimal_context([]) == EMPTY_CONTEXT

    def test_file_context_in_line_order(self):
        chunks = [
            _chunk("src/a.ts", 30, 40, content="tail()"),
            _chunk("src/other.ts", 1, content="elsewhere()"),
            _chunk("src/a.ts", 1, 12, content="head()", symbol="head"),
        ]
        context = build_file_context(chunks, "src/a.ts")

        assert context.startswith("## src/a.ts\n")
        assert "### function: `head` (lines 1-12)" in context
        assert "### Lines 30-40" in context
        assert context.index("head()") < context.index("tail()")
        assert "elsewhere()" not in context

    def test_file_context_unknown_file(self):
        assert build_file_context([_chunk("src/a.ts", 1)], "src/b.ts") == "No content found for src/b.ts"
