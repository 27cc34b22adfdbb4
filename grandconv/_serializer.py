"""
_serializer.py
==============
Structural serialization of a Tree.

  tree_to_document(tree)  -> nested dict
  tree_to_json(tree)      -> compact JSON string with sorted keys
  format_tree(tree)       -> indented text, one node name per line
  log_tree(tree)          -> format_tree emitted at DEBUG level

Every node becomes ``{"id": int, "name": str, "length": float}`` plus
``"children": [...]`` for internal nodes, siblings in the tree's child
order.  Both traversals are depth-first pre-order driven by an explicit
stack, so deep caterpillar trees do not hit the interpreter's recursion
limit.  The functions are pure: they read the tree and allocate new objects
only.
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def _node_document(tree, u: int) -> Dict[str, Any]:
    return {
        "id": int(tree.ids[u]),
        "name": tree.names[u],
        "length": float(tree.branch_length[u]),
    }


def tree_to_document(tree) -> Dict[str, Any]:
    """
    Return the nested document mirroring *tree*.

    Examples
    --------
    >>> t = Tree.from_newick('(A:1,B:2);')          # doctest: +SKIP
    >>> tree_to_document(t)                          # doctest: +SKIP
    {'id': 2, 'name': 'Root', 'length': 0.0, 'children': [
        {'id': 0, 'name': 'A', 'length': 1.0},
        {'id': 1, 'name': 'B', 'length': 2.0}]}
    """
    root_doc = _node_document(tree, tree.root)
    stack = [(tree.root, root_doc)]
    while stack:
        u, doc = stack.pop()
        kids = tree.children(u)
        if not kids:
            continue
        child_docs = [_node_document(tree, c) for c in kids]
        doc["children"] = child_docs
        # Reverse push keeps pre-order; output order is fixed by child_docs.
        for c, cdoc in zip(reversed(kids), reversed(child_docs)):
            stack.append((c, cdoc))
    return root_doc


def tree_to_json(tree) -> str:
    """Compact JSON rendering of ``tree_to_document`` with sorted keys."""
    return json.dumps(tree_to_document(tree), sort_keys=True, separators=(",", ":"))


def format_tree(tree, indent: int = 2) -> str:
    """
    Diagnostic pretty-printer: each node's name on its own line, indented
    by *indent* spaces per depth level, in pre-order.

    >>> print(format_tree(Tree.from_newick('((A,B),C);')))   # doctest: +SKIP
    Root
      Internal
        A
        B
      C
    """
    lines: List[str] = []
    stack = [(tree.root, 0)]
    while stack:
        u, level = stack.pop()
        lines.append(" " * level + tree.names[u])
        for c in reversed(tree.children(u)):
            stack.append((c, level + indent))
    return "\n".join(lines)


def log_tree(tree, indent: int = 2) -> None:
    """Emit ``format_tree`` line by line at DEBUG level."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    for line in format_tree(tree, indent).split("\n"):
        logger.debug(line)
