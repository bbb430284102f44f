"""Locate the project root and the logs directory."""

import os


PROJECT_ROOT_MARKERS = ("manifold_sync.py", "config.yaml", "pyproject.toml")


def _start_directory(anchor_path):
    if anchor_path is None:
        return os.path.dirname(os.path.abspath(__file__))
    anchor = os.path.abspath(str(anchor_path))
    return os.path.dirname(anchor) if os.path.isfile(anchor) else anchor


def _has_root_marker(directory):
    return any(os.path.isfile(os.path.join(directory, marker)) for marker in PROJECT_ROOT_MARKERS)


def get_project_root(anchor_path=None):
    """
    Walk up from `anchor_path` (file or directory, defaults to this package)
    to the first directory holding the entrypoint, the config file or the
    project file. Falls back to the parent of `runtime/`.
    """
    directory = _start_directory(anchor_path)
    while True:
        if _has_root_marker(directory):
            return directory
        parent = os.path.dirname(directory)
        if parent == directory:
            break
        directory = parent
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def get_logs_dir(anchor_path=None):
    return os.path.join(get_project_root(anchor_path), "logs")
