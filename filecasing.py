"""Lower-casing of installed workshop content, and its undo.

Some games running on case sensitive filesystems expect lowercase file names
while workshop content ships with mixed case. ``make_lower_case`` renames a
tree to lowercase and reports every original relative path. It refuses to
replace an existing lowercase sibling. Feeding the reported paths to
``restore_case`` in the order they were reported puts the original casing
back.
"""

import errno
import os
from pathlib import Path
from typing import Callable

WalkFunc = Callable[[str, os.DirEntry], None]
DeliverFunc = Callable[[str], None]


def walk_dfs(root: Path, deliver: WalkFunc) -> None:
    """Call ``deliver`` for every entry under ``root``, depth first.

    Paths are relative to ``root``. Entries of a directory come in lexical
    order and a directory is delivered after its contents. ``root`` itself is
    not delivered. Raises FileNotFoundError when ``root`` does not exist.
    """
    os.lstat(root)
    _walk(root, "", deliver)


def _walk(root: Path, rel_dir: str, deliver: WalkFunc) -> None:
    with os.scandir(os.path.join(root, rel_dir)) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name)
    for entry in entries:
        rel_path = os.path.join(rel_dir, entry.name) if rel_dir else entry.name
        if entry.is_dir(follow_symlinks=False):
            _walk(root, rel_path, deliver)
        deliver(rel_path, entry)


def make_lower_case(root: Path, deliver: DeliverFunc) -> None:
    def rename(rel_path: str, _entry: os.DirEntry) -> None:
        basename = os.path.basename(rel_path)
        lowered = basename.lower()
        if basename == lowered:
            return
        target = os.path.join(root, os.path.dirname(rel_path), lowered)
        if os.path.lexists(target):
            raise FileExistsError(errno.EEXIST, "lowercase name is already taken", target)
        os.rename(os.path.join(root, rel_path), target)
        deliver(rel_path)

    walk_dfs(root, rename)


def restore_case(root: Path, path: str) -> None:
    """Restore the casing of the last component of ``path``.

    Given ``Foo/Bar/Baz``, ``foo/bar/baz`` becomes ``foo/bar/Baz``.
    """
    directory = os.path.join(root, os.path.dirname(path).lower())
    basename = os.path.basename(path)
    os.rename(os.path.join(directory, basename.lower()), os.path.join(directory, basename))
