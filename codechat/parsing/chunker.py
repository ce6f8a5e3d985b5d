"""
Code chunker: splits one file into semantically meaningful chunks.

Order of strategies:
1. Prisma schemas: one `type` chunk per model/enum/type block
2. Config files (manifests, json, yaml): one whole-file `config` chunk
3. Structural: declarations found by the language family's detector
4. Fallback: non-overlapping, line-aligned windows of at most MAX_CHUNK_CHARS

Chunking is deterministic: the same content and path always produce the
same chunks. Lines are 1-indexed and inclusive.
"""

import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

from codechat.config import CHARS_PER_TOKEN, MAX_CHUNK_CHARS, MIN_CHUNK_CHARS
from codechat.parsing.detectors import get_detector
from codechat.parsing.languages import ChunkType, detect_language, file_name


# Always a single config chunk regardless of size
MANIFEST_FILES = frozenset({"package.json", "tsconfig.json", ".env.example"})
CONFIG_LANGUAGES = frozenset({"json", "yaml"})

_PRISMA_BLOCK = re.compile(r"^(?:model|enum|type)\s+(\w+)\s*\{.*?^\}", re.MULTILINE | re.DOTALL)

_JS_IMPORT = re.compile(r"""import\s+[^;]*?\s+from\s+['"]([^'"]+)['"]""")
_JS_SIDE_EFFECT_IMPORT = re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE)
_JS_REQUIRE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_PY_FROM_IMPORT = re.compile(r"^\s*from\s+([\w.]+)\s+import\b", re.MULTILINE)
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+)", re.MULTILINE)
_GO_IMPORT = re.compile(r"""^\s*import\s+(?:\w+\s+)?["']([^"']+)["']""", re.MULTILINE)
_GO_IMPORT_GROUP = re.compile(r"^\s*import\s*\((.*?)\)", re.MULTILINE | re.DOTALL)
_GO_GROUP_ENTRY = re.compile(r"""["']([^"']+)["']""")


@dataclass
class ChunkDraft:
    """A chunk before it is embedded and stored."""
    content: str
    file_path: str
    start_line: int
    end_line: int
    language: str
    chunk_type: str
    symbol_name: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    context: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def calculate_file_hash(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 content (change detection)."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token for code."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def extract_dependencies(content: str, language: str) -> List[str]:
    """Import targets in first-seen order, de-duplicated."""
    found: List[tuple] = []

    if language in ("typescript", "javascript"):
        for pattern in (_JS_IMPORT, _JS_SIDE_EFFECT_IMPORT, _JS_REQUIRE):
            found.extend((m.start(), m.group(1)) for m in pattern.finditer(content))
    elif language == "python":
        for pattern in (_PY_FROM_IMPORT, _PY_IMPORT):
            found.extend((m.start(), m.group(1)) for m in pattern.finditer(content))
    elif language == "go":
        found.extend((m.start(), m.group(1)) for m in _GO_IMPORT.finditer(content))
        for group in _GO_IMPORT_GROUP.finditer(content):
            offset = group.start(1)
            found.extend(
                (offset + entry.start(), entry.group(1))
                for entry in _GO_GROUP_ENTRY.finditer(group.group(1))
            )

    found.sort(key=lambda item: item[0])
    return list(dict.fromkeys(dep for _, dep in found))


def split_lines(content: str) -> List[str]:
    """Lines of a file; a final newline terminates the last line instead of opening a new one."""
    if content.endswith("\n"):
        content = content[:-1]
    return content.split("\n")


def _line_count(content: str) -> int:
    return len(split_lines(content))


# =============================================================================
# STRATEGIES
# =============================================================================

def _chunk_prisma(content: str, file_path: str) -> List[ChunkDraft]:
    chunks = []
    for match in _PRISMA_BLOCK.finditer(content):
        start_line = content.count("\n", 0, match.start()) + 1
        chunks.append(ChunkDraft(
            content=match.group(0),
            file_path=file_path,
            start_line=start_line,
            end_line=start_line + match.group(0).count("\n"),
            language="prisma",
            chunk_type=ChunkType.TYPE.value,
            symbol_name=match.group(1),
        ))
    return chunks


def _chunk_config(content: str, file_path: str, language: str) -> List[ChunkDraft]:
    name = file_name(file_path)
    if name in MANIFEST_FILES or len(content) <= MAX_CHUNK_CHARS:
        return [ChunkDraft(
            content=content,
            file_path=file_path,
            start_line=1,
            end_line=_line_count(content),
            language=language,
            chunk_type=ChunkType.CONFIG.value,
            symbol_name=name,
        )]
    return split_into_windows(content, file_path, language, [])


def _chunk_structural(
    lines: List[str],
    file_path: str,
    language: str,
    dependencies: List[str],
) -> List[ChunkDraft]:
    detector = get_detector(language, file_path)
    return [
        ChunkDraft(
            content="\n".join(lines[decl.start_line - 1:decl.end_line]),
            file_path=file_path,
            start_line=decl.start_line,
            end_line=decl.end_line,
            language=language,
            chunk_type=decl.chunk_type.value,
            symbol_name=decl.symbol_name,
            dependencies=list(dependencies),
        )
        for decl in detector.detect_declarations(lines)
    ]


def split_into_windows(
    content: str,
    file_path: str,
    language: str,
    dependencies: List[str],
) -> List[ChunkDraft]:
    """
    Non-overlapping line-aligned windows of at most MAX_CHUNK_CHARS.

    A single line longer than the window becomes its own window. A trailing
    window shorter than MIN_CHUNK_CHARS is merged into the previous one so
    the whole file stays covered.
    """
    lines = split_lines(content)
    windows: List[List[int]] = []  # [start_index, end_index] inclusive, 0-based
    start = 0
    size = 0

    for i, line in enumerate(lines):
        line_size = len(line) + 1
        if size + line_size > MAX_CHUNK_CHARS + 1 and i > start:
            windows.append([start, i - 1])
            start = i
            size = 0
        size += line_size
    windows.append([start, len(lines) - 1])

    if len(windows) > 1:
        tail_start, tail_end = windows[-1]
        if len("\n".join(lines[tail_start:tail_end + 1])) < MIN_CHUNK_CHARS:
            windows.pop()
            windows[-1][1] = tail_end

    return [
        ChunkDraft(
            content="\n".join(lines[s:e + 1]),
            file_path=file_path,
            start_line=s + 1,
            end_line=e + 1,
            language=language,
            chunk_type=ChunkType.OTHER.value,
            dependencies=list(dependencies),
        )
        for s, e in windows
    ]


# =============================================================================
# ENTRY POINT
# =============================================================================

def chunk_file(content: str, file_path: str) -> List[ChunkDraft]:
    """Split a file into chunks. Empty or whitespace-only content yields []."""
    if not content or not content.strip():
        return []

    language = detect_language(file_path)
    name = file_name(file_path)

    if name == "schema.prisma" or language == "prisma":
        chunks = _chunk_prisma(content, file_path)
        if chunks:
            return chunks
        return _chunk_config(content, file_path, language)

    if name in MANIFEST_FILES or language in CONFIG_LANGUAGES:
        return _chunk_config(content, file_path, language)

    dependencies = extract_dependencies(content, language)
    chunks = _chunk_structural(split_lines(content), file_path, language, dependencies)
    if chunks:
        return chunks

    return split_into_windows(content, file_path, language, dependencies)
