"""Tests for the subprocess execution core."""
import asyncio
import sys
import time

import pytest

from mcp_python_runtime.errors import ProcessCancelledError, PythonExecutionError
from mcp_python_runtime.execution import run_process

PY = sys.executable


@pytest.mark.asyncio
async def test_interleaved_output_goes_to_separate_buffers():
    code = (
        "import sys\n"
        "print('out1', flush=True)\n"
        "print('err1', file=sys.stderr, flush=True)\n"
        "print('out2', flush=True)\n"
    )
    result = await run_process(PY, ["-c", code])
    assert result.exit_code == 0
    assert result.stdout == "out1\nout2"
    assert result.stderr == "err1"


@pytest.mark.asyncio
async def test_nonzero_exit_is_a_result():
    result = await run_process(PY, ["-c", "import sys; sys.exit(3)"])
    assert result.exit_code == 3
    assert not result.success


@pytest.mark.asyncio
async def test_line_callbacks_receive_each_line():
    seen_out, seen_err = [], []
    result = await run_process(
        PY,
        ["-c", "import sys; print('a'); print('b'); print('c', file=sys.stderr)"],
        stdout_handler=seen_out.append,
        stderr_handler=seen_err.append,
    )
    assert seen_out == ["a", "b"]
    assert seen_err == ["c"]
    assert result.stdout == "a\nb"


@pytest.mark.asyncio
async def test_stdin_closed_without_supplier():
    result = await run_process(PY, ["-c", "import sys; print(repr(sys.stdin.read()))"])
    assert result.stdout == "''"


@pytest.mark.asyncio
async def test_stdin_supplier_lines_until_none():
    lines = iter(["first", "second", None])
    result = await run_process(
        PY,
        ["-c", "import sys; print(sys.stdin.read().split())"],
        stdin_supplier=lambda: next(lines),
    )
    assert result.stdout == "['first', 'second']"


@pytest.mark.asyncio
async def test_async_stdin_supplier():
    queue: asyncio.Queue = asyncio.Queue()
    for item in ("x", None):
        queue.put_nowait(item)
    result = await run_process(
        PY,
        ["-c", "import sys; print(sys.stdin.readline().strip())"],
        stdin_supplier=queue.get,
    )
    assert result.stdout == "x"


@pytest.mark.asyncio
async def test_env_overlay_and_cwd(tmp_path):
    result = await run_process(
        PY,
        ["-c", "import os; print(os.environ['RUNTIME_TEST_VAR']); print(os.getcwd())"],
        env={"RUNTIME_TEST_VAR": "hello"},
        cwd=tmp_path,
    )
    out = result.stdout.splitlines()
    assert out[0] == "hello"
    assert out[1] == str(tmp_path.resolve()) or out[1] == str(tmp_path)


@pytest.mark.asyncio
async def test_arguments_are_not_shell_interpreted():
    result = await run_process(PY, ["-c", "import sys; print(sys.argv[1])", "$HOME; echo hi"])
    assert result.stdout == "$HOME; echo hi"


@pytest.mark.asyncio
async def test_timeout_kills_process():
    started = time.monotonic()
    with pytest.raises(ProcessCancelledError) as exc_info:
        await run_process(PY, ["-c", "import time; time.sleep(30)"], timeout=0.5)
    assert exc_info.value.timed_out
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_cancel_event_kills_process():
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.3, event.set)
    with pytest.raises(ProcessCancelledError) as exc_info:
        await run_process(
            PY,
            ["-c", "import time; print('started', flush=True); time.sleep(30)"],
            cancel_event=event,
        )
    assert not exc_info.value.timed_out


@pytest.mark.asyncio
async def test_task_cancellation_propagates():
    task = asyncio.create_task(run_process(PY, ["-c", "import time; time.sleep(30)"]))
    await asyncio.sleep(0.3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_missing_executable_raises(tmp_path):
    with pytest.raises(PythonExecutionError, match="Failed to start"):
        await run_process(tmp_path / "no-such-binary", ["--version"])


@pytest.mark.asyncio
async def test_lines_longer_than_stream_limit():
    result = await run_process(PY, ["-c", "print('x' * 200000); print('tail')"])
    assert result.exit_code == 0
    first, second = result.stdout.split("\n")
    assert len(first) == 200000
    assert second == "tail"


@pytest.mark.asyncio
async def test_trailing_blank_lines_are_kept():
    result = await run_process(PY, ["-c", "print('a  '); print(); print()"])
    assert result.stdout == "a  \n\n"


@pytest.mark.asyncio
async def test_failing_line_handler_kills_process():
    def handler(line):
        raise RuntimeError(f"rejected {line}")

    started = time.monotonic()
    with pytest.raises(RuntimeError, match="rejected started"):
        await run_process(
            PY,
            ["-c", "import time; print('started', flush=True); time.sleep(30)"],
            stdout_handler=handler,
        )
    assert time.monotonic() - started < 10
