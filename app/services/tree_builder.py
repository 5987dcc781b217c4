"""Tree builder -- flat repository path listing → ordered hierarchical tree.

Pure and synchronous: no I/O, no shared state, a fresh tree per call.

Ordering: among siblings, directories come before files, and siblings of the
same kind sort by name in code-point order (case-sensitive).  The order is
applied to the finished tree, so the output for a given entry *set* is the
same whatever order the entries arrive in.

Malformed input is rejected as a whole with ``ValueError``; nothing is
silently skipped.  Malformed means: an empty path, an empty segment (leading,
trailing or doubled ``/``), an unknown kind, the same path declared with two
different kinds, or a file path used as a parent directory.
"""

from dataclasses import dataclass, field

KIND_FILE = "file"
KIND_DIR = "dir"
_KINDS = frozenset({KIND_FILE, KIND_DIR})

# Git tree item types → node kinds.  Submodules ("commit") are not walkable.
_GIT_TYPE_TO_KIND = {"blob": KIND_FILE, "tree": KIND_DIR}


@dataclass
class TreeNode:
    """One file or directory in the rendered tree."""

    name: str
    path: str
    kind: str
    children: list["TreeNode"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "kind": self.kind,
            "children": [child.to_dict() for child in self.children],
        }


def _sibling_key(node: TreeNode) -> tuple[int, str]:
    return (0 if node.kind == KIND_DIR else 1, node.name)


def _split_path(path: object) -> list[str]:
    if not isinstance(path, str) or not path:
        raise ValueError(f"Malformed tree path: {path!r}")
    segments = path.split("/")
    if any(segment == "" for segment in segments):
        raise ValueError(f"Malformed tree path (empty segment): {path!r}")
    return segments


def _declared_kinds(entries: list[dict]) -> dict[str, str]:
    """Validate entries and return ``{path: kind}``."""
    declared: dict[str, str] = {}
    for entry in entries:
        path = entry.get("path")
        kind = entry.get("type", entry.get("kind"))
        _split_path(path)
        if kind not in _KINDS:
            raise ValueError(f"Unknown kind {kind!r} for path {path!r}")
        previous = declared.get(path)
        if previous is not None and previous != kind:
            raise ValueError(f"Path {path!r} declared as both {previous} and {kind}")
        declared[path] = kind
    return declared


def _sort_recursive(nodes: list[TreeNode]) -> None:
    nodes.sort(key=_sibling_key)
    for node in nodes:
        if node.children:
            _sort_recursive(node.children)


def build_tree(entries: list[dict]) -> list[TreeNode]:
    """Build the tree for *entries* (``{"path": str, "type": "file"|"dir"}``).

    Intermediate directories that have no entry of their own are
    materialised on first sight.  Each unique path yields exactly one node.
    Returns the root-level nodes.
    """
    declared = _declared_kinds(entries)

    roots: list[TreeNode] = []
    nodes: dict[str, TreeNode] = {}

    # Walk in a canonical order so materialisation never depends on input order.
    for path in sorted(declared, key=lambda p: p.split("/")):
        segments = path.split("/")
        parent: TreeNode | None = None
        for depth, segment in enumerate(segments):
            current_path = "/".join(segments[: depth + 1])
            is_last = depth == len(segments) - 1
            kind = declared[path] if is_last else KIND_DIR

            node = nodes.get(current_path)
            if node is None:
                node = TreeNode(name=segment, path=current_path, kind=kind)
                nodes[current_path] = node
                if parent is None:
                    roots.append(node)
                else:
                    parent.children.append(node)
            elif node.kind != kind:
                raise ValueError(f"Path {current_path!r} is a file but has children")

            parent = node

    _sort_recursive(roots)
    return roots


def entries_from_git_tree(items: list[dict]) -> list[dict]:
    """Map git tree items (``type`` blob/tree) to builder entries.

    Items of any other type (submodule commits) are dropped.
    """
    return [
        {"path": item["path"], "type": _GIT_TYPE_TO_KIND[item["type"]]}
        for item in items
        if item.get("type") in _GIT_TYPE_TO_KIND
    ]


def tree_to_dicts(nodes: list[TreeNode]) -> list[dict]:
    return [node.to_dict() for node in nodes]
