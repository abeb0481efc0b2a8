"""Unit tests for diff rendering and storage policy."""

from reviewsync.connectors.gerrit.diff_policy import DiffPolicy

DIFF_INFO = {
    "diff_header": ["diff --git a/x.go b/x.go"],
    "content": [
        {"ab": ["package x"]},
        {"a": ["old()"], "b": ["new()"]},
    ],
}


def _policy(**kwargs) -> DiffPolicy:
    defaults = {
        "max_size_bytes": 1024,
        "exclude_paths": ["vendor/"],
        "exclude_patterns": [r"\.pb\.go$", r"^go\.sum$"],
    }
    defaults.update(kwargs)
    return DiffPolicy(**defaults)


class TestShouldSkipFile:
    def test_magic_files(self):
        policy = _policy()
        assert policy.should_skip_file("/COMMIT_MSG")
        assert policy.should_skip_file("/MERGE_LIST")

    def test_excluded_prefix(self):
        assert _policy().should_skip_file("vendor/golang.org/x/net/http2.go")

    def test_excluded_pattern(self):
        policy = _policy()
        assert policy.should_skip_file("api/service.pb.go")
        assert policy.should_skip_file("go.sum")
        assert not policy.should_skip_file("src/go.sum.go")

    def test_regular_file(self):
        assert not _policy().should_skip_file("src/net/http/server.go")


class TestRendering:
    def test_diff_to_text(self):
        text = DiffPolicy.diff_to_text(DIFF_INFO)
        assert text == "diff --git a/x.go b/x.go\n package x\n-old()\n+new()\n"

    def test_empty_diff(self):
        assert DiffPolicy.diff_to_text({}) == ""


class TestProcess:
    def test_small_diff_is_stored(self):
        file_diff = _policy().process(
            "x.go", {"status": "M", "lines_inserted": 1, "lines_deleted": 1}, DIFF_INFO
        )
        assert file_diff.diff_text.startswith("diff --git")
        assert file_diff.lines_inserted == 1
        assert not file_diff.size_exceeded

    def test_oversized_diff_is_flagged_not_stored(self):
        file_diff = _policy(max_size_bytes=10).process("x.go", {}, DIFF_INFO)
        assert file_diff.diff_text == ""
        assert file_diff.size_exceeded

    def test_binary_file_has_no_text(self):
        file_diff = _policy().process("logo.png", {"binary": True, "status": "A"}, DIFF_INFO)
        assert file_diff.binary
        assert file_diff.status == "A"
        assert file_diff.diff_text == ""

    def test_missing_diff_info(self):
        file_diff = _policy().process("x.go", {"lines_inserted": 4}, None)
        assert file_diff.diff_text == ""
        assert file_diff.lines_inserted == 4
