"""Tests for the content store and generated-output parsing."""

import pytest

from appforge.content import (
    UNKNOWN_HASH,
    ContentStore,
    FileDiff,
    diff_fingerprints,
    hash_content,
    parse_generated_output,
    strip_code_fences,
    write_generated_files,
)
from appforge.errors import FileWriteFailure


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "app")


class TestFingerprint:
    """Tests for hashing and fingerprint maps."""

    def test_hash_is_sha256_hex(self):
        digest = hash_content("hello")
        assert len(digest) == 64
        assert digest == hash_content(b"hello")

    def test_fingerprint_is_deterministic(self, store):
        store.write_text("server.js", "console.log(1)")
        assert store.fingerprint(["server.js"]) == store.fingerprint(["server.js"])

    def test_unreadable_file_recorded_as_unknown(self, store):
        store.write_text("server.js", "x")
        hashes = store.fingerprint(["server.js", "missing.js"])
        assert hashes["missing.js"] == UNKNOWN_HASH
        assert hashes["server.js"] == hash_content("x")

    def test_unsafe_path_recorded_as_unknown(self, store):
        assert store.fingerprint(["../escape.js"]) == {"../escape.js": UNKNOWN_HASH}


class TestDiff:
    """Tests for diff_fingerprints."""

    def test_classifies_changed_added_removed(self):
        old = {"a.js": "1", "b.js": "2", "c.js": "3"}
        new = {"a.js": "1", "b.js": "changed", "d.js": "4"}
        diff = diff_fingerprints(old, new)
        assert diff.changed == {"b.js"}
        assert diff.added == {"d.js"}
        assert diff.removed == {"c.js"}
        assert diff.all_paths == {"b.js", "c.js", "d.js"}
        assert diff.touched == {"b.js", "d.js"}

    def test_identical_maps_give_empty_diff(self):
        diff = diff_fingerprints({"a.js": "1"}, {"a.js": "1"})
        assert diff.is_empty
        assert diff == FileDiff()

    def test_classes_are_disjoint(self):
        diff = diff_fingerprints({"a": "1", "b": "2"}, {"b": "3", "c": "4"})
        assert not (diff.changed & diff.added)
        assert not (diff.changed & diff.removed)
        assert not (diff.added & diff.removed)

    def test_summary(self):
        diff = diff_fingerprints({"a": "1"}, {"a": "2", "b": "3"})
        assert diff.summary() == "1 modified, 1 added, 0 removed"


class TestContentStore:
    """Tests for ContentStore file access."""

    def test_write_creates_parents(self, store):
        assert store.write_text("src/components/App.jsx", "x") == "src/components/App.jsx"
        assert store.read_text("src/components/App.jsx") == "x"

    def test_write_rejects_traversal(self, store):
        with pytest.raises(FileWriteFailure):
            store.write_text("../outside.js", "x")

    def test_read_missing_returns_none(self, store):
        assert store.read_text("nope.js") is None

    def test_read_many(self, store):
        store.write_text("a.js", "a")
        assert store.read_many(["a.js", "b.js"]) == {"a.js": "a", "b.js": None}

    def test_delete(self, store):
        store.write_text("a.js", "a")
        assert store.delete("a.js") is True
        assert store.delete("a.js") is False
        assert not store.exists("a.js")

    def test_list_files_excludes_dirs(self, store):
        store.write_text("server.js", "x")
        store.write_text("src/App.jsx", "x")
        store.write_text("node_modules/pkg/index.js", "x")
        assert store.list_files(exclude_dirs=["node_modules"]) == ["server.js", "src/App.jsx"]

    def test_list_files_missing_root(self, tmp_path):
        assert ContentStore(tmp_path / "none").list_files() == []


class TestParser:
    """Tests for tagged-block extraction."""

    def test_extracts_files_and_explanation(self):
        text = (
            'Here you go\n<file path="server.js">\nconst x = 1;\n</file>\n'
            '<file path="package.json">{"name": "x"}</file>\n'
            "<changes>Added a server</changes>"
        )
        output = parse_generated_output(text)
        assert [f.path for f in output.files] == ["server.js", "package.json"]
        assert output.files[0].content == "const x = 1;"
        assert output.explanation == "Added a server"

    def test_no_blocks(self):
        output = parse_generated_output("I cannot help with that")
        assert output.files == []
        assert output.explanation == ""

    def test_strips_language_fences(self):
        assert strip_code_fences("app.jsx", "```jsx\nconst a = 1;\n```") == "const a = 1;"
        assert strip_code_fences("package.json", '```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_unknown_extension_only_trimmed(self):
        assert strip_code_fences("README.md", "  ```md\n# hi\n```  ") == "```md\n# hi\n```"

    def test_write_skips_unsafe_paths(self, store):
        text = (
            '<file path="server.js">ok</file>'
            '<file path="../../etc/passwd">bad</file>'
            '<file path="/abs.js">bad</file>'
        )
        report = write_generated_files(store, parse_generated_output(text))
        assert report.written == ["server.js"]
        assert report.skipped_count == 2
        assert store.read_text("server.js") == "ok"

    def test_duplicate_paths_written_once(self, store):
        text = '<file path="a.js">1</file><file path="./a.js">2</file>'
        report = write_generated_files(store, parse_generated_output(text))
        assert report.written == ["a.js"]
        assert store.read_text("a.js") == "2"

    def test_write_skips_nul_byte_path(self, store):
        text = '<file path="server.js">ok</file><file path="bad\x00name.js">x</file>'
        report = write_generated_files(store, parse_generated_output(text))
        assert report.written == ["server.js"]
        assert report.skipped_count == 1
        assert not store.exists("bad\x00name.js")
        assert store.read_text("bad\x00name.js") is None
        assert store.fingerprint(["bad\x00name.js"]) == {"bad\x00name.js": UNKNOWN_HASH}
