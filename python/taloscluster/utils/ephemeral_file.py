"""
taloscluster/utils/ephemeral_file.py

Async context manager that materializes credential bytes (a talosconfig or a
kubeconfig) as a short-lived file, so CLI tools that only accept a path can use
them. Files live in `/dev/shm` when available and are removed on exit.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


def _default_parent_dir() -> str:
    return "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_file(
    file_name: str,
    content: bytes,
    *,
    prefix: str = "taloscluster-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Write `content` into a private temporary directory and yield the file path.

    The directory is created with mode 0700 and removed together with the file
    when the context exits, whether or not the body raised.

    Args:
        file_name: Name of the file inside the temporary directory.
        content: Bytes to write.
        prefix: Prefix for the temporary directory name.
        parent_dir: Where to create the directory; `/dev/shm` by default.

    Yields:
        str: Absolute path of the written file.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent_dir(), prefix=prefix)
    ephemeral_path = os.path.join(ephemeral_dir, file_name)

    try:
        async with aiofiles.open(ephemeral_path, "wb") as f:
            await f.write(content)
        os.chmod(ephemeral_path, 0o600)
        yield ephemeral_path
    finally:
        for item in os.listdir(ephemeral_dir):
            item_path = os.path.join(ephemeral_dir, item)
            if os.path.isfile(item_path) or os.path.islink(item_path):
                os.remove(item_path)
        os.rmdir(ephemeral_dir)
