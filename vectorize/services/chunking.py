"""File scanning and chunking — syntax-aware units with line-window fallback."""

from __future__ import annotations

import logging
import math
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path

from tree_sitter_language_pack import get_parser

from vectorize.core.config import CodebaseConfig
from vectorize.core.exceptions import ParseError
from vectorize.models.chunk import MIN_CHUNK_CHARS, Chunk, ChunkKind

logger = logging.getLogger(__name__)

# Token budgets (~4 characters per token)
CHARS_PER_TOKEN = 4
MAX_CHUNK_TOKENS = 500
CHUNK_OVERLAP_TOKENS = 50
WINDOW_TOKENS = 256
WINDOW_OVERLAP_TOKENS = 50

MAX_FILE_BYTES = 1024 * 1024

LANGUAGE_MAP: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".md": "markdown",
    ".mdx": "markdown",
    ".txt": "text",
    ".rst": "text",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sql": "sql",
}

# Tree-sitter grammar per extension (TSX needs its own grammar)
GRAMMARS: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
}

# Node types that form a semantic boundary; matched nodes are not descended into
SEMANTIC_NODE_TYPES: dict[str, frozenset[str]] = {
    "typescript": frozenset({
        "function_declaration",
        "function_expression",
        "arrow_function",
        "method_definition",
        "class_declaration",
        "interface_declaration",
        "type_alias_declaration",
        "enum_declaration",
        "export_statement",
        "lexical_declaration",
    }),
    "javascript": frozenset({
        "function_declaration",
        "function_expression",
        "arrow_function",
        "method_definition",
        "class_declaration",
        "export_statement",
        "lexical_declaration",
    }),
    "python": frozenset({
        "function_definition",
        "class_definition",
        "decorated_definition",
    }),
    "go": frozenset({
        "function_declaration",
        "method_declaration",
        "type_declaration",
        "const_declaration",
        "var_declaration",
    }),
    "rust": frozenset({
        "function_item",
        "impl_item",
        "struct_item",
        "enum_item",
        "trait_item",
        "type_item",
        "mod_item",
    }),
    "java": frozenset({
        "method_declaration",
        "class_declaration",
        "interface_declaration",
        "enum_declaration",
        "record_declaration",
        "constructor_declaration",
    }),
}

SECTION_LANGUAGES = frozenset({"markdown", "text"})

_C_STYLE_COMMENTS = re.compile(r"//[^\n]*|/\*.*?\*/", re.DOTALL)
_HASH_COMMENTS = re.compile(r"#[^\n]*")
_COMMENT_PATTERNS: dict[str, re.Pattern[str]] = {
    "typescript": _C_STYLE_COMMENTS,
    "javascript": _C_STYLE_COMMENTS,
    "go": _C_STYLE_COMMENTS,
    "rust": _C_STYLE_COMMENTS,
    "java": _C_STYLE_COMMENTS,
    "python": _HASH_COMMENTS,
    "yaml": _HASH_COMMENTS,
    "toml": _HASH_COMMENTS,
    "sql": re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL),
}

_HEADING_RE = re.compile(r"^#{1,3}\s")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")


@dataclass
class SourceFile:
    """A project file loaded for chunking."""
    path: str  # project-relative, forward slashes
    absolute_path: Path
    content: str
    language: str

    @property
    def suffix(self) -> str:
        return os.path.splitext(self.path)[1].lower()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token for code."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def detect_language(path: str) -> str:
    return LANGUAGE_MAP.get(os.path.splitext(path)[1].lower(), "unknown")


# ── Scanning ─────────────────────────────────────────────────


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


def scan_codebase(
    project_root: Path,
    config: CodebaseConfig,
    only: Iterable[str] | None = None,
    skip_dirs: Iterable[str] = (".git", ".vectorindex"),
) -> list[SourceFile]:
    """Collect readable text files matching the include/exclude globs.

    Args:
        project_root: Directory the globs are relative to.
        config: Include/exclude patterns.
        only: When given, restrict the result to these project-relative paths.
        skip_dirs: Directory names never descended into.

    Returns:
        Files sorted by path so repeated scans are deterministic.
    """
    wanted = {p.replace("\\", "/") for p in only} if only is not None else None
    skipped = set(skip_dirs)
    files: list[SourceFile] = []

    for dirpath, dirnames, filenames in os.walk(project_root):
        rel_dir = Path(dirpath).relative_to(project_root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir + "/"
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in skipped and not matches_any(f"{rel_dir}{d}/", config.exclude)
        )
        for name in sorted(filenames):
            rel_path = f"{rel_dir}{name}"
            if wanted is not None and rel_path not in wanted:
                continue
            if not matches_any(rel_path, config.include) or matches_any(rel_path, config.exclude):
                continue
            source = _load_file(project_root, rel_path)
            if source is not None:
                files.append(source)

    return files


def _load_file(project_root: Path, rel_path: str) -> SourceFile | None:
    absolute = project_root / rel_path
    try:
        if absolute.stat().st_size > MAX_FILE_BYTES:
            logger.debug("Skipping %s: larger than %d bytes", rel_path, MAX_FILE_BYTES)
            return None
        raw = absolute.read_bytes()
    except OSError:
        logger.debug("Skipping unreadable file %s", rel_path)
        return None
    if b"\0" in raw[:2048]:
        return None
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Skipping non-UTF-8 file %s", rel_path)
        return None
    return SourceFile(
        path=rel_path,
        absolute_path=absolute,
        content=content,
        language=detect_language(rel_path),
    )


# ── Chunking ─────────────────────────────────────────────────


def chunk_file(source: SourceFile, strategy: str = "ast") -> list[Chunk]:
    """Split one file into chunks.

    Markdown and plain text are split by section. Other files are split at
    syntax-tree boundaries when a grammar is registered, falling back to a
    sliding window over lines when parsing fails or finds nothing.
    """
    if source.language in SECTION_LANGUAGES:
        return _chunk_sections(source)

    if strategy == "ast" and source.suffix in GRAMMARS:
        try:
            chunks = _chunk_with_ast(source)
        except ParseError as exc:
            logger.info("Falling back to sliding window for %s: %s", source.path, exc)
            chunks = []
        if chunks:
            return chunks

    return _chunk_sliding_window(source)


def _chunk_with_ast(source: SourceFile) -> list[Chunk]:
    data = source.content.encode("utf-8")
    try:
        parser = get_parser(GRAMMARS[source.suffix])
        tree = parser.parse(data)
    except Exception as exc:
        raise ParseError(f"cannot parse {source.path}: {exc}") from exc

    node_types = SEMANTIC_NODE_TYPES.get(source.language, frozenset())
    chunks: list[Chunk] = []
    seen: dict[tuple[int, int], int] = {}

    for node in _semantic_nodes(tree.root_node, node_types):
        start_line = node.start_point[0] + 1
        end_line = node.end_point[0] + 1
        content = data[node.start_byte:node.end_byte].decode("utf-8", errors="replace")

        if not _is_indexable(content, source.language):
            continue

        if estimate_tokens(content) > MAX_CHUNK_TOKENS:
            chunks.extend(_windows_to_chunks(
                source,
                content.split("\n"),
                start_line,
                MAX_CHUNK_TOKENS,
                CHUNK_OVERLAP_TOKENS,
                ChunkKind.CODE,
            ))
            continue

        # Siblings sharing a line range (e.g. two declarations on one line) share one chunk
        key = (start_line, end_line)
        if key in seen:
            index = seen[key]
            merged = f"{chunks[index].content}\n{content}"
            chunks[index] = chunks[index].model_copy(update={"content": merged})
            continue
        seen[key] = len(chunks)
        chunks.append(Chunk.create(
            content=content,
            file_path=source.path,
            start_line=start_line,
            end_line=end_line,
            language=source.language,
            kind=ChunkKind.CODE,
        ))

    return chunks


def _semantic_nodes(root, node_types: frozenset[str]) -> list:
    """Depth-first, document-ordered walk that stops at semantic boundaries."""
    found = []
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in node_types:
            found.append(node)
            continue
        stack.extend(reversed(node.children))
    return found


def _chunk_sliding_window(source: SourceFile) -> list[Chunk]:
    return _windows_to_chunks(
        source,
        _split_lines(source.content),
        1,
        WINDOW_TOKENS,
        WINDOW_OVERLAP_TOKENS,
        ChunkKind.DOCS if source.language in SECTION_LANGUAGES else ChunkKind.CODE,
    )


def _chunk_sections(source: SourceFile) -> list[Chunk]:
    """Split at level 1-3 headings; each section runs until the next such heading."""
    lines = _split_lines(source.content)
    sections: list[tuple[int, list[str]]] = []
    current: list[str] = []
    start_line = 1
    in_fence = False

    for number, line in enumerate(lines, start=1):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        if not in_fence and _HEADING_RE.match(line) and current:
            sections.append((start_line, current))
            current = []
            start_line = number
        current.append(line)
    if current:
        sections.append((start_line, current))

    chunks: list[Chunk] = []
    for first_line, section in sections:
        content = "\n".join(section)
        if estimate_tokens(content) > MAX_CHUNK_TOKENS:
            chunks.extend(_windows_to_chunks(
                source, section, first_line, MAX_CHUNK_TOKENS, CHUNK_OVERLAP_TOKENS, ChunkKind.DOCS,
            ))
        elif _is_indexable(content, source.language):
            chunks.append(Chunk.create(
                content=content,
                file_path=source.path,
                start_line=first_line,
                end_line=first_line + len(section) - 1,
                language=source.language,
                kind=ChunkKind.DOCS,
            ))
    return chunks


def _windows_to_chunks(
    source: SourceFile,
    lines: list[str],
    first_line: int,
    max_tokens: int,
    overlap_tokens: int,
    kind: ChunkKind,
) -> list[Chunk]:
    chunks = []
    for start, end, content in window_lines(lines, first_line, max_tokens, overlap_tokens):
        if _is_indexable(content, source.language):
            chunks.append(Chunk.create(
                content=content,
                file_path=source.path,
                start_line=start,
                end_line=end,
                language=source.language,
                kind=kind,
            ))
    return chunks


def window_lines(
    lines: list[str],
    first_line: int,
    max_tokens: int,
    overlap_tokens: int,
) -> list[tuple[int, int, str]]:
    """Greedy line windows of at most ``max_tokens``.

    Line ranges tile the input exactly (each line belongs to one window). The
    trailing lines of a window, up to ``overlap_tokens``, are repeated at the
    top of the next window's content. A single line longer than ``max_tokens``
    is split at character boundaries into windows that all carry its line number.

    Returns:
        ``(start_line, end_line, content)`` triples.
    """
    windows: list[tuple[int, int, str]] = []
    carry: list[str] = []
    current: list[str] = []
    tokens = 0
    start = first_line

    for number, line in enumerate(lines, start=first_line):
        line_tokens = estimate_tokens(line)
        if line_tokens > max_tokens:
            if current:
                windows.append((start, number - 1, "\n".join(carry + current)))
            # Minified or generated code
            width = max_tokens * CHARS_PER_TOKEN
            for offset in range(0, len(line), width):
                windows.append((number, number, line[offset:offset + width]))
            carry, current, tokens = [], [], 0
            start = number + 1
            continue
        if current and tokens + line_tokens > max_tokens:
            windows.append((start, number - 1, "\n".join(carry + current)))
            carry = _trailing_overlap(current, overlap_tokens)
            current = []
            tokens = estimate_tokens("\n".join(carry))
            start = number
            if tokens + line_tokens > max_tokens:
                carry, tokens = [], 0
        current.append(line)
        tokens += line_tokens

    if current:
        windows.append((start, start + len(current) - 1, "\n".join(carry + current)))
    return windows


def _trailing_overlap(lines: list[str], overlap_tokens: int) -> list[str]:
    carried: list[str] = []
    total = 0
    for line in reversed(lines):
        total += estimate_tokens(line)
        if total > overlap_tokens:
            break
        carried.append(line)
    carried.reverse()
    return carried


def _split_lines(content: str) -> list[str]:
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _is_indexable(content: str, language: str) -> bool:
    """At least the minimum length, and not made only of comments and whitespace."""
    stripped = content.strip()
    if len(stripped) < MIN_CHUNK_CHARS:
        return False
    pattern = _COMMENT_PATTERNS.get(language)
    if pattern is not None and not pattern.sub("", stripped).strip():
        return False
    return True
