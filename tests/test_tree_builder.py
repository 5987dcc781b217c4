"""Tests for the tree builder -- ordering, materialisation, rejection."""

import itertools
import random

import pytest

from app.services.tree_builder import (
    KIND_DIR,
    KIND_FILE,
    build_tree,
    entries_from_git_tree,
    tree_to_dicts,
)


def _names(nodes):
    return [(n.name, n.kind) for n in nodes]


def test_sibling_order_dirs_first_then_names():
    entries = [
        {"path": "b.ts", "type": "file"},
        {"path": "a", "type": "dir"},
        {"path": "c.ts", "type": "file"},
    ]
    assert _names(build_tree(entries)) == [("a", KIND_DIR), ("b.ts", KIND_FILE), ("c.ts", KIND_FILE)]


def test_dir_sorts_before_file_even_when_name_is_later():
    entries = [{"path": "a.txt", "type": "file"}, {"path": "z", "type": "dir"}]
    assert _names(build_tree(entries)) == [("z", KIND_DIR), ("a.txt", KIND_FILE)]


def test_names_compare_case_sensitively():
    entries = [{"path": "b", "type": "file"}, {"path": "B", "type": "file"}, {"path": "a", "type": "file"}]
    assert [n.name for n in build_tree(entries)] == ["B", "a", "b"]


def test_intermediate_directories_are_materialised_once():
    entries = [
        {"path": "src/app/main.py", "type": "file"},
        {"path": "src/app/util.py", "type": "file"},
        {"path": "src/README.md", "type": "file"},
    ]
    roots = build_tree(entries)

    assert _names(roots) == [("src", KIND_DIR)]
    src = roots[0]
    assert _names(src.children) == [("app", KIND_DIR), ("README.md", KIND_FILE)]
    app = src.children[0]
    assert app.path == "src/app"
    assert [c.path for c in app.children] == ["src/app/main.py", "src/app/util.py"]


def test_declared_dir_and_implicit_dir_are_one_node():
    entries = [{"path": "src/a.py", "type": "file"}, {"path": "src", "type": "dir"}]
    roots = build_tree(entries)
    assert len(roots) == 1
    assert [c.name for c in roots[0].children] == ["a.py"]


def test_empty_directory_has_no_children():
    roots = build_tree([{"path": "empty", "type": "dir"}])
    assert roots[0].children == []


def test_empty_input():
    assert build_tree([]) == []


def test_output_is_independent_of_input_order():
    entries = [
        {"path": "src", "type": "dir"},
        {"path": "src/b.ts", "type": "file"},
        {"path": "src/a", "type": "dir"},
        {"path": "src/a/x.ts", "type": "file"},
        {"path": "README.md", "type": "file"},
        {"path": "docs/guide.md", "type": "file"},
    ]
    expected = tree_to_dicts(build_tree(entries))

    for perm in itertools.islice(itertools.permutations(entries), 200):
        assert tree_to_dicts(build_tree(list(perm))) == expected

    rng = random.Random(7)
    for _ in range(50):
        shuffled = entries[:]
        rng.shuffle(shuffled)
        assert tree_to_dicts(build_tree(shuffled)) == expected


def test_build_returns_fresh_nodes_each_call():
    entries = [{"path": "a/b", "type": "file"}]
    first = build_tree(entries)
    second = build_tree(entries)
    first[0].children.clear()
    assert len(second[0].children) == 1


def test_to_dict_shape():
    data = tree_to_dicts(build_tree([{"path": "a/b.py", "type": "file"}]))
    assert data == [
        {
            "name": "a",
            "path": "a",
            "kind": "dir",
            "children": [{"name": "b.py", "path": "a/b.py", "kind": "file", "children": []}],
        }
    ]


@pytest.mark.parametrize("bad_path", ["", "/a", "a/", "a//b"])
def test_rejects_empty_segments(bad_path):
    with pytest.raises(ValueError):
        build_tree([{"path": "ok.txt", "type": "file"}, {"path": bad_path, "type": "file"}])


def test_rejects_unknown_kind():
    with pytest.raises(ValueError):
        build_tree([{"path": "a", "type": "symlink"}])


def test_rejects_conflicting_duplicate():
    with pytest.raises(ValueError):
        build_tree([{"path": "a", "type": "file"}, {"path": "a", "type": "dir"}])


def test_rejects_file_used_as_parent():
    with pytest.raises(ValueError):
        build_tree([{"path": "a", "type": "file"}, {"path": "a/b", "type": "file"}])


def test_entries_from_git_tree_maps_types_and_drops_submodules():
    items = [
        {"path": "src", "type": "tree", "sha": "1"},
        {"path": "src/a.ts", "type": "blob", "sha": "2", "size": 10},
        {"path": "vendor/lib", "type": "commit", "sha": "3"},
    ]
    assert entries_from_git_tree(items) == [
        {"path": "src", "type": "dir"},
        {"path": "src/a.ts", "type": "file"},
    ]
