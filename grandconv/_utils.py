"""
_utils.py
=========
General-purpose helper functions for grandconv.

These are standalone functions that don't depend on the main classes
and are shared by the tree model, the analysis layer and the tests.
"""

from typing import Any


def format_newick(newick: str) -> str:
    """
    Format a NEWICK string for consistent representation.

    Ensures the NEWICK string:
    - Ends with a semicolon
    - Has no leading/trailing whitespace

    Parameters
    ----------
    newick : str
        NEWICK string to format.

    Returns
    -------
    str
        Formatted NEWICK string.

    Examples
    --------
    >>> format_newick('((A:1,B:1):1,(C:1,D:1):1)')
    '((A:1,B:1):1,(C:1,D:1):1);'

    >>> format_newick('  ((A:1,B:1):1);  ')
    '((A:1,B:1):1);'
    """
    newick = newick.strip()
    if not newick.endswith(";"):
        newick += ";"
    return newick


def branch_pair_id(i: int, j: int) -> str:
    """
    Identifier used for a selected branch pair in result documents.

    >>> branch_pair_id(3, 7)
    'BP_3x7'
    """
    return f"BP_{int(i)}x{int(j)}"


def branch_pair_name(i: int, j: int) -> str:
    """
    >>> branch_pair_name(3, 7)
    'Branch Pair: 3..7'
    """
    return f"Branch Pair: {int(i)}..{int(j)}"


def branch_pair_label(tree: Any, i: int, j: int) -> str:
    """
    Label a pair by the two branches it compares, each written as
    ``parent..node``.

    Parameters
    ----------
    tree : Tree
        Any object with a ``parent`` array.
    i, j : int
        Node indices.

    Examples
    --------
    For a tree where node 2's parent is 5 and node 3's parent is 6:

    >>> branch_pair_label(tree, 2, 3)   # doctest: +SKIP
    '5..2 x 6..3'
    """
    return f"{int(tree.parent[i])}..{int(i)} x {int(tree.parent[j])}..{int(j)}"
