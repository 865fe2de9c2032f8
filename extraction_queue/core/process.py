"""
Process Utilities - Subprocess execution with streamed output.
"""

import asyncio
import shlex
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

LineHandler = Callable[[str], Awaitable[None]]

# Agents emit one JSON document per line; some lines are large
STREAM_LIMIT = 16 * 1024 * 1024


def format_command(template: str, **values: str) -> list[str]:
    """
    Split a command template into argv and substitute placeholders per token.

    Substitution happens after splitting, so values containing spaces or
    quotes stay a single argument.
    """
    return [token.format_map(values) for token in shlex.split(template)]


async def run_command(
    argv: list[str],
    cwd: Path,
    on_line: LineHandler,
    env: Mapping[str, str] | None = None,
) -> int:
    """
    Run a command, feeding each line of merged stdout/stderr to `on_line`.

    Cancelling the awaiting task kills the child process.

    Returns:
        The process exit code
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=dict(env) if env is not None else None,
        limit=STREAM_LIMIT,
    )
    try:
        assert process.stdout is not None
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            await on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        return await process.wait()
    except BaseException:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
