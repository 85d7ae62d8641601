import os
import tempfile
from pathlib import Path
from typing import Optional, Union


def generate_pipe_name(pipe_id: str, namespace: str) -> str:
    """
    Build a rendezvous socket path ``<tmpdir>/<namespace>-<pipe_id>.sock``.

    Unix-domain socket paths are limited to ~104 bytes on macOS and 108 on
    Linux, so the id should be a compact hex uuid.
    """
    name = f"{namespace}-{pipe_id}.sock"
    return os.path.join(tempfile.gettempdir(), name)


def get_display_path_name(
    path_value: Union[str, Path], home: Optional[Union[str, Path]] = None
) -> str:
    """Shorten ``path_value`` for labels by substituting the home directory with ~."""
    path_value = str(path_value)
    home = str(home) if home is not None else str(Path.home())
    if path_value == home:
        return "~"
    if path_value.startswith(home.rstrip(os.sep) + os.sep):
        return "~" + os.sep + os.path.relpath(path_value, home)
    return path_value
