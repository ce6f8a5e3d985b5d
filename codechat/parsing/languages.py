"""Language detection and the shared chunk vocabulary."""

import posixpath
from enum import Enum


class ChunkType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    CONFIG = "config"
    OTHER = "other"


# Extension -> language (lowercase, without the dot)
LANGUAGE_MAP = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "py": "python",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "swift": "swift",
    "rb": "ruby",
    "php": "php",
    "cs": "csharp",
    "cpp": "cpp",
    "hpp": "cpp",
    "c": "c",
    "h": "c",
    "vue": "vue",
    "svelte": "svelte",
    "prisma": "prisma",
    "sql": "sql",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "md": "markdown",
    "mdx": "markdown",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
}

DEFAULT_LANGUAGE = "text"


def file_name(file_path: str) -> str:
    return posixpath.basename(file_path.replace("\\", "/"))


def file_extension(file_path: str) -> str:
    """Text after the last dot of the file name, lowercased ('' if none)."""
    name = file_name(file_path)
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def detect_language(file_path: str) -> str:
    """Map a path to a language name; unknown extensions are 'text'."""
    return LANGUAGE_MAP.get(file_extension(file_path), DEFAULT_LANGUAGE)
