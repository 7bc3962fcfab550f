from __future__ import annotations

import pytest

from sandforge.engine.paths import ancestors, basename, is_within, normalize_path, to_sandbox_path


@pytest.mark.parametrize(
    "raw",
    [
        "src/App.tsx",
        "/src/App.tsx",
        "/home/project/src/App.tsx",
        "home/project/src/App.tsx",
        "WORK_DIR/src/App.tsx",
        "  ./src/App.tsx  ",
        "${WORK_DIR}/src/App.tsx",
        "~/project/src/App.tsx",
    ],
)
def test_equivalent_inputs_normalize_to_one_path(raw):
    assert normalize_path(raw) == "/home/project/src/App.tsx"


@pytest.mark.parametrize(
    "raw",
    ["package.json", "/home/project/a/b/c.txt", "WORK_DIR/x", "", "/", "../../etc/passwd"],
)
def test_normalize_is_idempotent(raw):
    once = normalize_path(raw)
    assert normalize_path(once) == once


def test_nested_hallucinated_roots_collapse():
    assert normalize_path("/home/project/home/project/index.html") == "/home/project/index.html"
    assert normalize_path("WORK_DIR/home/project/index.html") == "/home/project/index.html"


def test_dotdot_cannot_escape_root():
    assert normalize_path("../../etc/passwd") == "/home/project/etc/passwd"
    assert normalize_path("src/../index.js") == "/home/project/index.js"


def test_empty_path_is_root():
    assert normalize_path("") == "/home/project"


def test_custom_root_and_alternates():
    assert normalize_path("APP/main.py", "/srv/app", ("APP",)) == "/srv/app/main.py"
    assert normalize_path("/srv/app/main.py", "/srv/app/", ()) == "/srv/app/main.py"


def test_windows_separators():
    assert normalize_path("src\\lib\\util.ts") == "/home/project/src/lib/util.ts"


def test_to_sandbox_path():
    assert to_sandbox_path("/home/project/src/App.tsx") == "src/App.tsx"
    assert to_sandbox_path("/home/project") == "."
    assert to_sandbox_path("/elsewhere/file") == "elsewhere/file"


def test_ancestors_outermost_first():
    assert ancestors("/root/a/b/c.txt") == ["/root", "/root/a", "/root/a/b"]


def test_ancestors_stop_at_project_root():
    assert ancestors("/home/project/src/app/x.ts", stop_at="/home/project") == [
        "/home/project/src",
        "/home/project/src/app",
    ]
    # Outside the floor the floor is ignored.
    assert ancestors("/root/a/b/c.txt", stop_at="/home/project") == ["/root", "/root/a", "/root/a/b"]


def test_is_within_and_basename():
    assert is_within("/home/project/src", "/home/project")
    assert not is_within("/home/projects", "/home/project")
    assert basename("/home/project/src/") == "src"
