import pytest

from ipgate.paths import has_dot_segments, under_prefix


@pytest.mark.parametrize(
    "path, prefix, expected",
    [
        ("/public", "/public", True),
        ("/public/", "/public", True),
        ("/public/report", "/public", True),
        ("/public/report", "/public/", True),
        ("/publicity", "/public", False),
        ("/publicity", "/public/", False),
        ("/admin", "/admin/", True),
        ("/administrator", "/admin/", False),
        ("/", "/healthz", False),
    ],
)
def test_under_prefix_matches_whole_segments(path, prefix, expected):
    assert under_prefix(path, prefix) is expected


@pytest.mark.parametrize("path", ["/public/../private", "/./x", "/a/..", "..", "/a/./b"])
def test_dot_segments_detected(path):
    assert has_dot_segments(path)


@pytest.mark.parametrize("path", ["/", "/a/b", "/a..b/", "/.well-known/x", "/a/..."])
def test_plain_paths_have_no_dot_segments(path):
    assert not has_dot_segments(path)
