"""
File selection for indexing.

Filters a repository tree down to the files worth chunking:
- binary extensions, vendored/build directories and generated files are dropped
- .gitignore patterns are honoured (negations are ignored)
- only recognised code/config languages are kept
- large repositories (by estimated line count) are narrowed to priority
  folders and important files
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern

from codechat.config import AVG_CHARS_PER_LINE, LARGE_REPO_THRESHOLD_LINES
from codechat.parsing.languages import detect_language, file_extension, file_name

logger = logging.getLogger(__name__)


DEFAULT_EXCLUDED_DIRS = frozenset({
    "node_modules", ".git", ".svn", ".hg",
    "dist", "build", "out", ".next", ".nuxt", ".output", "coverage",
    "__pycache__", ".pytest_cache", ".mypy_cache", "venv", ".venv", "env", ".env",
    "vendor", "target", "Pods", ".gradle", ".idea", ".vscode", ".DS_Store",
    "tmp", "temp", "logs", "log", ".cache", ".parcel-cache", ".turbo",
    "storybook-static",
})

DEFAULT_EXCLUDED_PATTERNS: List[Pattern] = [
    re.compile(r"\.min\.(js|css)$"),
    re.compile(r"\.bundle\.(js|css)$"),
    re.compile(r"\.map$"),
    re.compile(r"\.lock$"),
    re.compile(r"package-lock\.json$"),
    re.compile(r"pnpm-lock\.yaml$"),
    re.compile(r"\.d\.ts$"),  # Type declarations (usually generated)
    re.compile(r"\.generated\."),
    re.compile(r"\.snap$"),  # Jest snapshots
]

BINARY_EXTENSIONS = frozenset({
    # Images
    "png", "jpg", "jpeg", "gif", "bmp", "ico", "webp", "svg", "avif",
    # Fonts
    "woff", "woff2", "ttf", "otf", "eot",
    # Documents
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
    # Archives
    "zip", "tar", "gz", "rar", "7z", "bz2",
    # Audio/Video
    "mp3", "mp4", "wav", "ogg", "webm", "avi", "mov", "flv",
    # Compiled
    "exe", "dll", "so", "dylib", "class", "pyc", "pyo", "o", "obj",
    # Database
    "db", "sqlite", "sqlite3",
    # Other
    "bin", "dat", "dump",
})

# Indexed exclusively (with IMPORTANT_FILES) once a repository is too large
PRIORITY_FOLDERS = (
    "src", "lib", "app", "pages", "components", "api", "server", "client",
    "core", "modules", "packages", "services", "utils", "helpers", "hooks",
    "contexts", "providers", "middleware", "routes", "controllers", "models",
    "schemas", "types", "interfaces", "config", "scripts",
)

IMPORTANT_FILES = frozenset({
    "package.json", "tsconfig.json", "schema.prisma", ".env.example",
    "README.md", "Dockerfile", "docker-compose.yml", "docker-compose.yaml",
})

CODE_LANGUAGES = frozenset({
    "typescript", "javascript", "python", "go", "rust", "java",
    "kotlin", "swift", "ruby", "php", "csharp", "cpp", "c",
    "vue", "svelte", "prisma", "sql", "json", "yaml", "shell",
    "markdown", "dart",
})


@dataclass
class FileInfo:
    path: str
    size: int = 0
    sha: Optional[str] = None


@dataclass
class FilterResult:
    included: List[FileInfo] = field(default_factory=list)
    excluded: List[FileInfo] = field(default_factory=list)
    total_files: int = 0
    total_size: int = 0
    included_size: int = 0
    is_prioritized: bool = False
    is_empty: bool = False
    warnings: List[str] = field(default_factory=list)


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


# =============================================================================
# GITIGNORE
# =============================================================================

def parse_gitignore(content: str) -> List[str]:
    """Non-empty, non-comment lines of a .gitignore file."""
    return [
        line.strip()
        for line in (content or "").split("\n")
        if line.strip() and not line.strip().startswith("#")
    ]


def gitignore_pattern_to_regex(pattern: str) -> Optional[Pattern]:
    """
    Convert one gitignore pattern to a compiled regex.

    Supports rooted (/x), any-depth (**/x), directory (x/) patterns and
    the * and ? wildcards. Negations (!x) return None.
    """
    if pattern.startswith("!"):
        return None

    rooted = pattern.startswith("/")
    clean = pattern[1:] if rooted else pattern

    any_depth = clean.startswith("**/")
    if any_depth:
        clean = clean[3:]

    if clean.endswith("/"):
        clean = clean[:-1]

    regex = re.sub(r"[.+^${}()|\[\]\\]", lambda m: "\\" + m.group(0), clean)
    regex = regex.replace("**", "\x00")
    regex = regex.replace("*", "[^/]*")
    regex = regex.replace("\x00", ".*")
    regex = regex.replace("?", "[^/]")

    if any_depth:
        regex = "(?:^|.*/)" + regex
    elif rooted:
        regex = "^" + regex
    else:
        regex = "(?:^|/)" + regex

    # Files and directories alike match the path itself or anything below it
    regex += "(?:/|$)"

    try:
        return re.compile(regex)
    except re.error:
        logger.debug(f"[file_filter] Skipping invalid gitignore pattern: {pattern!r}")
        return None


def matches_gitignore(file_path: str, patterns: Iterable[str]) -> bool:
    normalized = _normalize(file_path)
    for pattern in patterns:
        regex = gitignore_pattern_to_regex(pattern)
        if regex is not None and regex.search(normalized):
            return True
    return False


# =============================================================================
# SINGLE-FILE CHECKS
# =============================================================================

def is_in_excluded_dir(file_path: str) -> bool:
    return any(part in DEFAULT_EXCLUDED_DIRS for part in _normalize(file_path).split("/"))


def matches_excluded_pattern(file_path: str) -> bool:
    normalized = _normalize(file_path)
    return any(pattern.search(normalized) for pattern in DEFAULT_EXCLUDED_PATTERNS)


def is_binary_file(file_path: str) -> bool:
    return file_extension(file_path) in BINARY_EXTENSIONS


def is_in_priority_folder(file_path: str) -> bool:
    return any(part.lower() in PRIORITY_FOLDERS for part in _normalize(file_path).split("/"))


def is_important_file(file_path: str) -> bool:
    return file_name(file_path) in IMPORTANT_FILES


def is_code_file(file_path: str) -> bool:
    return detect_language(file_path) in CODE_LANGUAGES


def estimate_total_lines(files: Iterable[FileInfo]) -> int:
    return math.ceil(sum(f.size for f in files) / AVG_CHARS_PER_LINE)


def should_include_file(
    file_path: str,
    gitignore_patterns: Optional[List[str]] = None,
    respect_gitignore: bool = True,
) -> bool:
    """True if a single path passes every exclusion rule."""
    if is_binary_file(file_path):
        return False
    if is_in_excluded_dir(file_path):
        return False
    if matches_excluded_pattern(file_path):
        return False
    if respect_gitignore and gitignore_patterns and matches_gitignore(file_path, gitignore_patterns):
        return False
    # Manifests like Dockerfile or .env.example carry no code language but are kept
    return is_code_file(file_path) or is_important_file(file_path)


# =============================================================================
# FILTER
# =============================================================================

def filter_files(
    files: List[FileInfo],
    max_total_lines: int = LARGE_REPO_THRESHOLD_LINES,
    gitignore_content: str = "",
    respect_gitignore: bool = True,
) -> FilterResult:
    """Filter and prioritise a repository tree for indexing."""
    patterns = parse_gitignore(gitignore_content) if gitignore_content else []
    total_size = sum(f.size for f in files)

    included: List[FileInfo] = []
    excluded: List[FileInfo] = []
    for file in files:
        if should_include_file(file.path, patterns, respect_gitignore):
            included.append(file)
        else:
            excluded.append(file)

    if not included:
        return FilterResult(
            included=[],
            excluded=excluded,
            total_files=len(files),
            total_size=total_size,
            included_size=0,
            is_prioritized=False,
            is_empty=True,
            warnings=["No indexable code files found in repository"],
        )

    warnings: List[str] = []
    final = included
    estimated_lines = estimate_total_lines(included)
    is_prioritized = estimated_lines > max_total_lines

    if is_prioritized:
        warnings.append(
            f"Repository is large (~{round(estimated_lines / 1000)}k lines). "
            f"Only priority folders will be indexed: {', '.join(PRIORITY_FOLDERS[:5])}, etc."
        )
        priority = [f for f in included if is_in_priority_folder(f.path) or is_important_file(f.path)]

        if estimate_total_lines(priority) > max_total_lines:
            # Important files first; stable sort keeps tree order otherwise
            priority.sort(key=lambda f: 0 if is_important_file(f.path) else 1)
            final = []
            accumulated = 0
            for file in priority:
                file_lines = math.ceil(file.size / AVG_CHARS_PER_LINE)
                if accumulated + file_lines <= max_total_lines:
                    final.append(file)
                    accumulated += file_lines
            warnings.append(f"Indexed {len(final)} of {len(included)} files due to size limit.")
        else:
            final = priority

        kept = {f.path for f in final}
        excluded.extend(f for f in included if f.path not in kept)
        logger.info(
            f"[file_filter] Large repository (~{estimated_lines} lines): "
            f"kept {len(final)}/{len(included)} files"
        )

    return FilterResult(
        included=final,
        excluded=excluded,
        total_files=len(files),
        total_size=total_size,
        included_size=sum(f.size for f in final),
        is_prioritized=is_prioritized,
        is_empty=False,
        warnings=warnings,
    )

