"""Subprocess execution with streamed I/O and combined cancellation.

Every process is started from a discrete argument list, never a shell string.
stdin is always a pipe so a child never blocks on an inherited terminal; stdout
and stderr are read line by line into separate buffers and optionally forwarded
to per-line callbacks. A per-call timeout and an external cancellation event
race against process completion; whichever wins first decides the outcome.
"""

import asyncio
import inspect
import os
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional, Sequence, Union

from mcp_python_runtime.errors import ProcessCancelledError, PythonExecutionError
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.types import ExecutionResult, ProcessPriority

logger = get_logger(__name__)

StdinSupplier = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]
LineHandler = Callable[[str], Union[None, Awaitable[None]]]

READ_CHUNK_SIZE = 65536

NICE_INCREMENTS = {
    ProcessPriority.IDLE: 19,
    ProcessPriority.BELOW_NORMAL: 10,
    ProcessPriority.NORMAL: 0,
    ProcessPriority.ABOVE_NORMAL: -5,
    ProcessPriority.HIGH: -10,
}

WINDOWS_PRIORITY_CLASSES = {
    ProcessPriority.IDLE: "IDLE_PRIORITY_CLASS",
    ProcessPriority.BELOW_NORMAL: "BELOW_NORMAL_PRIORITY_CLASS",
    ProcessPriority.NORMAL: "NORMAL_PRIORITY_CLASS",
    ProcessPriority.ABOVE_NORMAL: "ABOVE_NORMAL_PRIORITY_CLASS",
    ProcessPriority.HIGH: "HIGH_PRIORITY_CLASS",
}


def _priority_kwargs(priority: Optional[ProcessPriority]) -> dict:
    if priority is None or priority == ProcessPriority.NORMAL:
        return {}

    if sys.platform == "win32":
        return {"creationflags": getattr(subprocess, WINDOWS_PRIORITY_CLASSES[priority], 0)}

    increment = NICE_INCREMENTS[priority]

    def apply_nice():
        try:
            os.nice(increment)
        except PermissionError:
            # Raising priority needs privileges; the child keeps the inherited one
            pass

    return {"preexec_fn": apply_nice}


async def _invoke(handler: Callable, *args):
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _emit_line(raw: bytes, lines: list[str], handler: Optional[LineHandler]) -> None:
    line = raw.decode("utf-8", errors="replace").rstrip("\r")
    lines.append(line)
    if handler is not None:
        await _invoke(handler, line)


async def _pump_stream(
    stream: asyncio.StreamReader,
    lines: list[str],
    handler: Optional[LineHandler],
) -> None:
    # Lines are split here rather than with readline(), which caps line length
    pending = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending.extend(chunk)
        end = pending.rfind(b"\n")
        if end < 0:
            continue
        complete = bytes(pending[:end])
        del pending[:end + 1]
        for raw in complete.split(b"\n"):
            await _emit_line(raw, lines, handler)
    if pending:
        await _emit_line(bytes(pending), lines, handler)


async def _feed_stdin(
    stdin: asyncio.StreamWriter,
    supplier: Optional[StdinSupplier],
) -> None:
    try:
        if supplier is None:
            return
        while True:
            value = await _invoke(supplier)
            if value is None:
                break
            stdin.write(f"{value}\n".encode("utf-8"))
            await stdin.drain()
            await asyncio.sleep(0)
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.warning({"event": "stdin_closed_by_process", "error": str(e)})
    finally:
        stdin.close()


async def _wait_for_exit(
    process: asyncio.subprocess.Process,
    stdin_task: asyncio.Task,
    pumps: list[asyncio.Task],
) -> int:
    await asyncio.gather(*pumps)
    exit_code = await process.wait()
    if not stdin_task.done():
        stdin_task.cancel()
    (stdin_outcome,) = await asyncio.gather(stdin_task, return_exceptions=True)
    if isinstance(stdin_outcome, Exception):
        raise stdin_outcome
    return exit_code


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            # Exited between the check and the kill
            pass
    await process.wait()


async def _abort(process: asyncio.subprocess.Process, tasks: list[asyncio.Task]) -> None:
    await _kill(process)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_process(
    executable: Union[str, Path],
    args: Sequence[Union[str, Path]] = (),
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    priority: Optional[ProcessPriority] = None,
    stdin_supplier: Optional[StdinSupplier] = None,
    stdout_handler: Optional[LineHandler] = None,
    stderr_handler: Optional[LineHandler] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ExecutionResult:
    """Run a process to completion and capture its output.

    A non-zero exit code is returned, not raised. Raises PythonExecutionError
    when the process cannot be started and ProcessCancelledError when the
    timeout elapses or `cancel_event` is set first; in both cases the process
    is killed before returning.
    """
    command = [str(executable), *(str(arg) for arg in args)]
    process_env = {**os.environ, **env} if env else None

    logger.debug({
        "event": "process_starting",
        "command": command,
        "cwd": str(cwd) if cwd else None,
        "timeout": timeout,
    })

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=process_env,
            **_priority_kwargs(priority),
        )
    except OSError as e:
        raise PythonExecutionError(f"Failed to start {executable}: {e}") from e

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    stdin_task = asyncio.create_task(_feed_stdin(process.stdin, stdin_supplier))
    pumps = [
        asyncio.create_task(_pump_stream(process.stdout, stdout_lines, stdout_handler)),
        asyncio.create_task(_pump_stream(process.stderr, stderr_lines, stderr_handler)),
    ]
    completion = asyncio.create_task(_wait_for_exit(process, stdin_task, pumps))
    all_tasks = [completion, stdin_task, *pumps]

    waiters = {completion}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await _abort(process, all_tasks)
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if completion not in done:
        timed_out = cancel_waiter is None or cancel_waiter not in done
        await _abort(process, all_tasks)
        logger.warning({
            "event": "process_cancelled",
            "command": command,
            "timed_out": timed_out,
            "timeout": timeout,
        })
        raise ProcessCancelledError(
            str(executable),
            timed_out=timed_out,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )

    if completion.exception() is not None:
        await _abort(process, all_tasks)
        logger.error({
            "event": "process_output_failed",
            "command": command,
            "error": str(completion.exception()),
        })
        raise completion.exception()

    exit_code = completion.result()
    result = ExecutionResult(
        exit_code=exit_code,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_lines),
    )

    if exit_code != 0:
        logger.warning({
            "event": "process_exit_nonzero",
            "command": command,
            "exit_code": exit_code,
            "stderr": result.stderr[-2000:],
        })
    else:
        logger.debug({"event": "process_completed", "command": command})

    return result
