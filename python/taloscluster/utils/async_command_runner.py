"""
taloscluster/utils/async_command_runner.py

Asynchronous subprocess runner used to drive the `docker`, `talosctl` and
`kubectl` binaries. Failed commands raise CommandError, which keeps the
captured stderr so callers can classify the failure (e.g. a Talos gRPC status
code or a Docker "No such container" message).

Usage example:
    from taloscluster.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["docker", "ps", "-q"], retries=1)
    except CommandError as err:
        if "cannot connect" in err.stderr.lower():
            ...
"""

from __future__ import annotations

import os
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from taloscluster.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured standard error of the failed command.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    When `sensitive=True` the command line and its output are left out of the
    error message (talosctl and kubectl calls carry credentials in their files,
    and `docker run` carries the base64 machine configuration in its arguments).
    The captured stderr is always attached to the raised CommandError.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error message.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            How many attempts to make in total. Defaults to 1.
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            Receives stderr; a non-None return value replaces the error message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all attempts.
    """
    accepted = successful_return_codes or [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        logger.debug("Running %s", command[0] if sensitive else " ".join(command))
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )

        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in accepted:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode, stderr_str)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"{command[0]} failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
