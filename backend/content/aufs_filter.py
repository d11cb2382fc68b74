"""
AUFS whiteout filtering.

A layer hides lower-layer content by shipping marker files:

- `<dir>/.wh.<name>` hides `<dir>/<name>` (and everything below it)
- `<dir>/.wh..wh..opq` hides everything below `<dir>`

Markers only ever affect layers below the one that carries them, and are
never part of the merged view themselves.
"""

import posixpath
from typing import Iterable, List

from registry.models import LayerIndex

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"


def _is_hidden(path: str, hidden_paths: set, hidden_dirs: set) -> bool:
    if path in hidden_paths:
        return True
    # Walk up the parents: a hidden path hides its subtree, an opaque dir hides its children
    parent = posixpath.dirname(path)
    while True:
        if parent in hidden_dirs or parent in hidden_paths:
            return True
        if not parent:
            return False
        parent = posixpath.dirname(parent)


class AufsFilter:
    """Applies whiteout markers across an ordered stack of layer indexes"""

    def filter_layers(self, indexes: Iterable[LayerIndex]) -> List[LayerIndex]:
        """
        Compute the visible file listing of every layer.

        Args:
            indexes: Layer indexes ordered top-down (depth 1 first)

        Returns:
            New LayerIndex list, same order, with markers removed and
            whited-out lower-layer entries dropped
        """
        hidden_paths: set = set()
        hidden_dirs: set = set()
        filtered = []

        for index in sorted(indexes, key=lambda i: i.depth):
            visible = []
            new_paths = set()
            new_dirs = set()

            for path in index.files:
                directory, name = posixpath.split(path)
                if name == OPAQUE_MARKER:
                    new_dirs.add(directory)
                elif name.startswith(WHITEOUT_PREFIX):
                    new_paths.add(posixpath.join(directory, name[len(WHITEOUT_PREFIX):]))
                elif not _is_hidden(path, hidden_paths, hidden_dirs):
                    visible.append(path)

            filtered.append(LayerIndex(depth=index.depth, digest=index.digest, files=visible))

            # Markers take effect for the layers below this one only
            hidden_paths |= new_paths
            hidden_dirs |= new_dirs

        return filtered
