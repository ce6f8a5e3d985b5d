"""
Declaration detectors, one per language family.

Supported languages (TS/JS, Python, Go, Rust, Java) are parsed with
tree-sitter (tree-sitter-language-pack grammars); top-level declaration
nodes become chunks with their exact line span.

The regex detectors below are the fallback when a tree yields nothing.
They scan top-level (unindented) lines for declaration patterns and decide
where the block ends:

- Brace languages (TS/JS, Go, Rust, Java): brace matching
- Python: indentation (last non-blank line before the dedent)

Everything else gets DefaultDetector, which finds nothing so the chunker
falls back to fixed windows.

Comment lines directly above a declaration (and decorators/annotations)
belong to it. Lines already owned by an earlier declaration are skipped,
so nested declarations are never emitted on their own.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Set, Tuple

from tree_sitter_language_pack import get_parser

from codechat.config import MIN_CHUNK_CHARS
from codechat.parsing.languages import ChunkType

logger = logging.getLogger(__name__)

# Block end used when no structural end can be found
DEFAULT_BLOCK_LINES = 50


@dataclass
class Declaration:
    """A detected declaration. Lines are 1-indexed and inclusive."""
    start_line: int
    end_line: int
    chunk_type: ChunkType
    symbol_name: str


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


class DeclarationDetector:
    """Base detector: pattern scan over top-level lines plus a block-end rule."""

    language_family = "default"
    patterns: List[Tuple[ChunkType, Pattern]] = []
    leading_prefixes: Tuple[str, ...] = ()

    def detect_declarations(self, lines: List[str]) -> List[Declaration]:
        declarations: List[Declaration] = []
        used: Set[int] = set()

        for i, line in enumerate(lines):
            if i in used or not line or line[0].isspace():
                continue

            for chunk_type, pattern in self.patterns:
                match = pattern.match(line)
                if not match:
                    continue

                end = self.find_block_end(lines, i)
                start = self._leading_start(lines, i, used)
                content = "\n".join(lines[start:end + 1])
                if len(content) < MIN_CHUNK_CHARS:
                    continue

                used.update(range(start, end + 1))
                declarations.append(Declaration(
                    start_line=start + 1,
                    end_line=end + 1,
                    chunk_type=chunk_type,
                    symbol_name=match.group(1),
                ))
                break

        return declarations

    def find_block_end(self, lines: List[str], start: int) -> int:
        return min(start + DEFAULT_BLOCK_LINES, len(lines) - 1)

    def _leading_start(self, lines: List[str], start: int, used: Set[int]) -> int:
        """Walk upwards over contiguous comment/decorator lines."""
        if not self.leading_prefixes:
            return start
        j = start - 1
        while j >= 0 and j not in used:
            stripped = lines[j].strip()
            if not stripped or not stripped.startswith(self.leading_prefixes):
                break
            j -= 1
        return j + 1


class DefaultDetector(DeclarationDetector):
    """Languages without structural support."""

    def detect_declarations(self, lines: List[str]) -> List[Declaration]:
        return []


class BraceDetector(DeclarationDetector):
    leading_prefixes = ("//", "/*", "*", "@")

    def find_block_end(self, lines: List[str], start: int) -> int:
        depth = 0
        opened = False
        for i in range(start, len(lines)):
            for char in lines[i]:
                if char == "{":
                    depth += 1
                    opened = True
                elif char == "}":
                    depth -= 1
                    if opened and depth == 0:
                        return i
            # Single-statement declarations (type aliases, arrow one-liners)
            if not opened and lines[i].rstrip().endswith(";"):
                return i
        return super().find_block_end(lines, start)


class TypeScriptDetector(BraceDetector):
    language_family = "typescript"
    patterns = [
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)")),
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?const\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?\(")),
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\w+\s*=>")),
        (ChunkType.CLASS, re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)")),
        (ChunkType.INTERFACE, re.compile(r"^(?:export\s+)?interface\s+(\w+)")),
        (ChunkType.TYPE, re.compile(r"^(?:export\s+)?type\s+(\w+)")),
        (ChunkType.TYPE, re.compile(r"^(?:export\s+)?(?:const\s+)?enum\s+(\w+)")),
    ]


class JavaScriptDetector(BraceDetector):
    language_family = "javascript"
    patterns = [
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)")),
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\(")),
        (ChunkType.FUNCTION, re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\w+\s*=>")),
        (ChunkType.CLASS, re.compile(r"^(?:export\s+)?(?:default\s+)?class\s+(\w+)")),
    ]


class GoDetector(BraceDetector):
    language_family = "go"
    leading_prefixes = ("//", "/*", "*")
    patterns = [
        (ChunkType.FUNCTION, re.compile(r"^func\s+(?:\([^)]+\)\s*)?(\w+)")),
        (ChunkType.TYPE, re.compile(r"^type\s+(\w+)\s+struct\b")),
        (ChunkType.INTERFACE, re.compile(r"^type\s+(\w+)\s+interface\b")),
    ]


class RustDetector(BraceDetector):
    language_family = "rust"
    leading_prefixes = ("//", "/*", "*", "#[")
    patterns = [
        (ChunkType.FUNCTION, re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)")),
        (ChunkType.TYPE, re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?struct\s+(\w+)")),
        (ChunkType.TYPE, re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?enum\s+(\w+)")),
        (ChunkType.INTERFACE, re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?trait\s+(\w+)")),
    ]


class JavaDetector(BraceDetector):
    language_family = "java"
    patterns = [
        (ChunkType.CLASS, re.compile(r"^(?:public\s+)?(?:final\s+)?(?:abstract\s+)?class\s+(\w+)")),
        (ChunkType.INTERFACE, re.compile(r"^(?:public\s+)?interface\s+(\w+)")),
        (ChunkType.TYPE, re.compile(r"^(?:public\s+)?(?:enum|record)\s+(\w+)")),
        (ChunkType.FUNCTION, re.compile(r"^(?:public|private|protected)?\s*(?:static\s+)?(?:\w+\s+)+(\w+)\s*\(")),
    ]


class PythonDetector(DeclarationDetector):
    language_family = "python"
    leading_prefixes = ("#", "@")
    patterns = [
        (ChunkType.FUNCTION, re.compile(r"^(?:async\s+)?def\s+(\w+)")),
        (ChunkType.CLASS, re.compile(r"^class\s+(\w+)")),
    ]

    def find_block_end(self, lines: List[str], start: int) -> int:
        base_indent = _indent(lines[start])
        last = start
        for i in range(start + 1, len(lines)):
            stripped = lines[i].strip()
            if not stripped:
                continue
            # Closing bracket of a multi-line signature stays with the def
            if _indent(lines[i]) <= base_indent and not stripped.startswith((")", "]", "}")):
                return last
            last = i
        return last


# =============================================================================
# TREE-SITTER
# =============================================================================

# Initializer values that make a `const name = ...` a function
_FUNCTION_VALUES = frozenset({"arrow_function", "function_expression", "function", "generator_function"})

_NODE_TYPES: Dict[str, ChunkType] = {
    # TypeScript / JavaScript
    "function_declaration": ChunkType.FUNCTION,
    "generator_function_declaration": ChunkType.FUNCTION,
    "class_declaration": ChunkType.CLASS,
    "abstract_class_declaration": ChunkType.CLASS,
    "interface_declaration": ChunkType.INTERFACE,
    "type_alias_declaration": ChunkType.TYPE,
    "enum_declaration": ChunkType.TYPE,
    # Python
    "function_definition": ChunkType.FUNCTION,
    "class_definition": ChunkType.CLASS,
    # Go
    "method_declaration": ChunkType.FUNCTION,
    # Rust
    "function_item": ChunkType.FUNCTION,
    "struct_item": ChunkType.TYPE,
    "enum_item": ChunkType.TYPE,
    "trait_item": ChunkType.INTERFACE,
    # Java
    "record_declaration": ChunkType.TYPE,
}


def _node_text(node) -> Optional[str]:
    if node is None or node.text is None:
        return None
    return node.text.decode("utf-8", errors="replace")


def _node_name(node) -> Optional[str]:
    return _node_text(node.child_by_field_name("name"))


class TreeSitterDetector(DeclarationDetector):
    """
    Declarations from a tree-sitter syntax tree.

    Only direct children of the root are considered, so methods and nested
    functions stay inside their enclosing declaration. Braces or quotes
    inside strings, template literals and docstrings cannot shift a block
    end the way they can for the line scanners above.

    When parsing fails or the tree yields no declarations the regex
    detector of the same family takes over.
    """

    def __init__(self, grammar: str, fallback: DeclarationDetector):
        self.grammar = grammar
        self.fallback = fallback
        self.language_family = fallback.language_family
        self.leading_prefixes = fallback.leading_prefixes
        self._parser = None

    @property
    def parser(self):
        if self._parser is None:
            self._parser = get_parser(self.grammar)
        return self._parser

    def detect_declarations(self, lines: List[str]) -> List[Declaration]:
        try:
            tree = self.parser.parse("\n".join(lines).encode("utf-8"))
        except Exception as e:
            logger.warning(f"[detectors] tree-sitter {self.grammar} parse failed, using regex: {e}")
            return self.fallback.detect_declarations(lines)

        declarations = self._from_tree(tree.root_node, lines)
        if not declarations:
            return self.fallback.detect_declarations(lines)
        return declarations

    def _from_tree(self, root, lines: List[str]) -> List[Declaration]:
        declarations: List[Declaration] = []
        used: Set[int] = set()
        last_line = len(lines) - 1

        for node in root.named_children:
            found = self._classify(node)
            if found is None:
                continue
            chunk_type, symbol_name = found

            first = node.start_point[0]
            end = min(node.end_point[0], last_line)
            if first in used:
                continue
            start = self._leading_start(lines, first, used)
            content = "\n".join(lines[start:end + 1])
            if len(content) < MIN_CHUNK_CHARS:
                continue

            used.update(range(start, end + 1))
            declarations.append(Declaration(
                start_line=start + 1,
                end_line=end + 1,
                chunk_type=chunk_type,
                symbol_name=symbol_name,
            ))

        return declarations

    def _classify(self, node) -> Optional[Tuple[ChunkType, str]]:
        """Chunk type and symbol name for a top-level node, None when it is not a declaration."""
        if node.type in ("export_statement", "decorated_definition"):
            inner = node.child_by_field_name("declaration") or node.child_by_field_name("definition")
            return self._classify(inner) if inner is not None else None

        if node.type in ("lexical_declaration", "variable_declaration"):
            for declarator in node.named_children:
                value = declarator.child_by_field_name("value")
                name = _node_name(declarator)
                if value is not None and value.type in _FUNCTION_VALUES and name:
                    return ChunkType.FUNCTION, name
            return None

        if node.type == "type_declaration":
            for spec in node.named_children:
                if spec.type not in ("type_spec", "type_alias"):
                    continue
                name = _node_name(spec)
                kind = spec.child_by_field_name("type")
                if not name:
                    return None
                if kind is not None and kind.type == "interface_type":
                    return ChunkType.INTERFACE, name
                return ChunkType.TYPE, name
            return None

        if node.type == "impl_item":
            name = _node_text(node.child_by_field_name("type"))
            return (ChunkType.CLASS, name) if name else None

        chunk_type = _NODE_TYPES.get(node.type)
        name = _node_name(node) if chunk_type is not None else None
        if not name:
            return None
        return chunk_type, name


# =============================================================================
# REGISTRY
# =============================================================================

_DETECTORS: Dict[str, DeclarationDetector] = {
    "typescript": TypeScriptDetector(),
    "javascript": JavaScriptDetector(),
    "python": PythonDetector(),
    "go": GoDetector(),
    "rust": RustDetector(),
    "java": JavaDetector(),
}

# Grammar names in tree-sitter-language-pack; "tsx" parses JSX inside .tsx files
_TREE_SITTER: Dict[str, TreeSitterDetector] = {
    language: TreeSitterDetector(language, detector) for language, detector in _DETECTORS.items()
}
_TREE_SITTER["tsx"] = TreeSitterDetector("tsx", _DETECTORS["typescript"])

_DEFAULT = DefaultDetector()


def get_detector(language: Optional[str], file_path: Optional[str] = None) -> DeclarationDetector:
    """Detector for a language, DefaultDetector when unsupported."""
    if (language or "") not in _DETECTORS:
        return _DEFAULT
    if language == "typescript" and file_path and file_path.lower().endswith(".tsx"):
        return _TREE_SITTER["tsx"]
    return _TREE_SITTER[language]
