"""
Private scratch workspaces for pipeline runs.

Each run gets its own directory. A directory left behind by an earlier run is
never reused: creating the workspace fails instead, so two runs cannot share
intermediate files.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from structconn.core.exceptions import WorkspaceExistsError

logger = logging.getLogger(__name__)


def get_scratch_root() -> Path:
    """Get the directory under which run workspaces are created.

    The location can be configured via the STRUCTCONN_TMPDIR environment
    variable. If not set, the system temporary directory is used.

    Returns
    -------
    Path
        Scratch root (created if it doesn't exist)

    Examples
    --------
    >>> import os
    >>> os.environ['STRUCTCONN_TMPDIR'] = '/scratch/connectome'
    >>> get_scratch_root()
    PosixPath('/scratch/connectome')
    """
    if root_env := os.environ.get("STRUCTCONN_TMPDIR"):
        root = Path(root_env)
    else:
        root = Path(tempfile.gettempdir())

    root.mkdir(parents=True, exist_ok=True)
    return root


def workspace_name(subject: str, timepoint: str, target_space: str) -> str:
    """Directory name of the workspace for one session and target space."""
    return f"structconn_{subject}_{timepoint}_{target_space}"


@contextmanager
def exclusive_workspace(
    name: str, root: str | Path | None = None, cleanup: bool = True
) -> Iterator[Path]:
    """
    Create a scratch directory that belongs to this run alone.

    Parameters
    ----------
    name : str
        Directory name, unique per session and target space.
    root : str or Path, optional
        Parent directory. Defaults to :func:`get_scratch_root`.
    cleanup : bool, default=True
        Remove the directory and its contents on exit. The directory is
        removed on errors too.

    Yields
    ------
    Path
        The new, empty workspace directory.

    Raises
    ------
    WorkspaceExistsError
        If the directory already exists.
    """
    root = Path(root) if root is not None else get_scratch_root()
    root.mkdir(parents=True, exist_ok=True)
    path = root / name

    try:
        # atomic: only one run can create a given workspace
        path.mkdir()
    except FileExistsError as e:
        raise WorkspaceExistsError(path) from e

    logger.debug(f"Created workspace {path}")
    try:
        yield path
    finally:
        if cleanup:
            shutil.rmtree(path, ignore_errors=True)
            logger.debug(f"Removed workspace {path}")


def discard(path: Path) -> None:
    """Delete an intermediate file as soon as it is no longer needed."""
    if path.exists():
        size_mb = path.stat().st_size / 1e6
        path.unlink()
        logger.debug(f"Discarded {path.name} ({size_mb:.1f} MB)")
