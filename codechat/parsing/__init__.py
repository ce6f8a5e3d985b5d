"""
Parsing: language detection, file selection and chunking.
"""

from .languages import ChunkType, detect_language
from .chunker import (
    ChunkDraft,
    chunk_file,
    calculate_file_hash,
    estimate_tokens,
    extract_dependencies,
)
from .file_filter import FileInfo, FilterResult, filter_files

__all__ = [
    "ChunkType",
    "detect_language",
    "ChunkDraft",
    "chunk_file",
    "calculate_file_hash",
    "estimate_tokens",
    "extract_dependencies",
    "FileInfo",
    "FilterResult",
    "filter_files",
]
