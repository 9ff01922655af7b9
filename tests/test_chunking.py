"""Unit tests for scanning and chunking."""

from pathlib import Path

from vectorize.core.config import CodebaseConfig
from vectorize.models.chunk import ChunkKind
from vectorize.services.chunking import (
    SourceFile,
    chunk_file,
    detect_language,
    estimate_tokens,
    scan_codebase,
    window_lines,
)

from conftest import BILLING_PY, GUIDE_MD, USER_SERVICE_TS


def _source(path: str, content: str) -> SourceFile:
    return SourceFile(
        path=path,
        absolute_path=Path("/nonexistent") / path,
        content=content,
        language=detect_language(path),
    )


def test_detect_language():
    assert detect_language("src/a.ts") == "typescript"
    assert detect_language("src/a.TSX") == "typescript"
    assert detect_language("lib/x.py") == "python"
    assert detect_language("README.md") == "markdown"
    assert detect_language("notes.txt") == "text"
    assert detect_language("Makefile") == "unknown"


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcde") == 2


def test_scan_respects_include_and_exclude(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.ts").write_text("export const a = 1;\n")
    (tmp_path / "src" / "a.test.ts").write_text("test('a', () => {});\n")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1;\n")
    (tmp_path / "other.ts").write_text("export const b = 2;\n")

    config = CodebaseConfig(include=["src/**", "node_modules/**"], exclude=["node_modules/**", "*.test.ts"])
    files = scan_codebase(tmp_path, config)

    assert [f.path for f in files] == ["src/a.ts"]
    assert files[0].language == "typescript"


def test_scan_skips_binary_and_index_dir(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "blob.ts").write_bytes(b"\x00\x01\x02binary")
    (tmp_path / "src" / "ok.ts").write_text("export const ok = true;\n")
    (tmp_path / ".vectorindex").mkdir()
    (tmp_path / ".vectorindex" / "x.ts").write_text("export const hidden = 1;\n")

    files = scan_codebase(tmp_path, CodebaseConfig(include=["**"], exclude=[]))
    assert [f.path for f in files] == ["src/ok.ts"]


def test_scan_only_restricts_to_given_paths(tmp_path: Path):
    (tmp_path / "src").mkdir()
    for name in ("a.py", "b.py"):
        (tmp_path / "src" / name).write_text("x = 1\n")
    files = scan_codebase(tmp_path, CodebaseConfig(include=["src/**"]), only=["src/b.py", "src/gone.py"])
    assert [f.path for f in files] == ["src/b.py"]


def test_ast_chunks_follow_function_boundaries():
    chunks = chunk_file(_source("src/user-service.ts", USER_SERVICE_TS))

    assert [c.line_range for c in chunks] == [(3, 5), (7, 10)]
    assert chunks[0].content.startswith("export function getUserById")
    assert all(c.kind is ChunkKind.CODE for c in chunks)
    assert all(c.language == "typescript" for c in chunks)
    assert chunks[0].id == "src/user-service.ts:3-5"


def test_python_classes_are_not_split_into_methods():
    chunks = chunk_file(_source("src/billing.py", BILLING_PY))
    assert [c.line_range for c in chunks] == [(1, 3), (6, 8)]
    assert "def send" in chunks[1].content


def test_chunking_is_deterministic():
    source = _source("src/user-service.ts", USER_SERVICE_TS)
    first = chunk_file(source)
    second = chunk_file(source)
    assert [(c.id, c.content) for c in first] == [(c.id, c.content) for c in second]


def test_comment_only_file_yields_no_chunks():
    content = "// just a comment\n// and another one that is quite long\n/* block comment here */\n"
    assert chunk_file(_source("src/notes.ts", content)) == []


def test_short_fragments_are_dropped():
    assert chunk_file(_source("src/tiny.py", "x = 1\n")) == []


def test_sliding_window_strategy_tiles_the_file():
    lines = [f"const value{i} = computeSomethingUseful({i}, 'argument number {i}');" for i in range(120)]
    content = "\n".join(lines) + "\n"
    chunks = chunk_file(_source("src/values.ts", content), strategy="sliding-window")

    assert len(chunks) > 1
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == 120
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_line == previous.end_line + 1
        # trailing lines of the previous window are repeated as overlap
        assert lines[previous.end_line - 1] in current.content


def test_unparseable_extension_falls_back_to_windows():
    content = "key: value\nother_key: another value that is long enough\n"
    chunks = chunk_file(_source("config/app.yaml", content))
    assert len(chunks) == 1
    assert chunks[0].line_range == (1, 2)
    assert chunks[0].language == "yaml"


def test_oversized_node_is_split_into_windows():
    body = "\n".join(f"    total += compute_component_value({i}, factor={i * 3})" for i in range(200))
    content = f"def huge():\n    total = 0\n{body}\n    return total\n"
    chunks = chunk_file(_source("src/huge.py", content))

    assert len(chunks) > 1
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == 203
    assert all(estimate_tokens(c.content) <= 500 + 60 for c in chunks)


def test_markdown_splits_at_headings():
    chunks = chunk_file(_source("docs/guide.md", GUIDE_MD))
    assert [c.line_range for c in chunks] == [(1, 4), (5, 7)]
    assert all(c.kind is ChunkKind.DOCS for c in chunks)
    assert chunks[1].content.startswith("## Rollback")


def test_markdown_ignores_headings_inside_code_fences():
    content = (
        "# Setup\n"
        "\n"
        "Run the following script to configure everything:\n"
        "```bash\n"
        "# not a heading, a shell comment\n"
        "./configure --all\n"
        "```\n"
    )
    chunks = chunk_file(_source("docs/setup.md", content))
    assert len(chunks) == 1
    assert chunks[0].line_range == (1, 7)


def test_window_lines_carries_overlap_into_next_window():
    lines = ["x" * 40 for _ in range(10)]  # 10 tokens per line
    windows = window_lines(lines, 1, max_tokens=30, overlap_tokens=10)

    assert [(start, end) for start, end, _ in windows] == [(1, 3), (4, 5), (6, 7), (8, 9), (10, 10)]
    # one line (10 tokens) of overlap is carried, and counts toward the budget
    assert windows[1][2].split("\n") == ["x" * 40] * 3


def test_window_lines_splits_a_line_longer_than_the_budget():
    windows = window_lines(["x" * 5000], 1, max_tokens=500, overlap_tokens=50)

    assert [(start, end) for start, end, _ in windows] == [(1, 1), (1, 1), (1, 1)]
    assert [len(content) for _, _, content in windows] == [2000, 2000, 1000]


def test_long_line_between_short_lines_keeps_ranges_tiled():
    lines = ["a" * 40, "b" * 400, "c" * 40]  # 10, 100, 10 tokens
    windows = window_lines(lines, 7, max_tokens=30, overlap_tokens=10)

    assert [(start, end) for start, end, _ in windows] == [(7, 7), (8, 8), (8, 8), (8, 8), (8, 8), (9, 9)]
    assert windows[-1][2] == "c" * 40


def test_minified_file_chunks_stay_within_the_token_budget():
    literal = "".join(f"item{i:05d}," for i in range(800))
    content = f'export const TABLE = "{literal}"; export function lookup(k) {{ return TABLE.indexOf(k); }}'
    chunks = chunk_file(_source("dist/table.min.js", content))

    assert len(chunks) > 1
    assert all(c.line_range == (1, 1) for c in chunks)
    assert all(estimate_tokens(c.content) <= 500 for c in chunks)
    assert "".join(c.content for c in chunks).count("item00799") == 1
