"""Utility functions for subprocess management and cancellation."""

import asyncio
import os
from typing import Any, Dict, List, Optional


async def run_subprocess_with_cancellation(
    cmd: List[str],
    stdin_data: Optional[bytes] = None,
    env: Optional[Dict[str, str]] = None,
    capture_output: bool = True,
) -> Dict[str, Any]:
    """
    Run a subprocess with proper cancellation support.

    When the task is cancelled (e.g., by Ctrl+C), the subprocess will be terminated.

    Args:
        cmd: Command to execute as a list of strings
        stdin_data: Optional data to send to stdin
        env: Extra environment variables layered over the current environment
        capture_output: When False, stdout and stderr go to the terminal

    Returns:
        Dictionary with returncode, stdout, and stderr

    Raises:
        asyncio.CancelledError: If the task is cancelled
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    pipe = asyncio.subprocess.PIPE if capture_output else None
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if stdin_data is not None else None,
        stdout=pipe,
        stderr=pipe,
        env=full_env,
    )

    try:
        stdout, stderr = await process.communicate(input=stdin_data)
        return {
            "returncode": process.returncode,
            "stdout": stdout.decode() if stdout else "",
            "stderr": stderr.decode() if stderr else "",
        }
    except asyncio.CancelledError:
        # Task was cancelled, terminate the subprocess
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except (ProcessLookupError, OSError):
            # Process might have already finished
            pass
        raise


async def pipe_to_shell(text: str, shell_command: str) -> int:
    """
    Feed rendered output to ``sh -c shell_command``.

    The child's own output goes straight to the terminal, so pipelines such as
    ``get pods | grep web | wc -l`` behave as in the surrounding shell.

    Returns:
        The shell's exit status
    """
    result = await run_subprocess_with_cancellation(
        ["sh", "-c", shell_command],
        stdin_data=text.encode(),
        capture_output=False,
    )
    return result["returncode"]


def split_pipeline(line: str) -> tuple[str, Optional[str]]:
    """Split ``command | shell`` at the first unquoted pipe character."""

    quote: Optional[str] = None
    escaped = False
    for idx, ch in enumerate(line):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "|":
            shell = line[idx + 1 :].strip()
            return line[:idx].strip(), shell or None
    return line.strip(), None
