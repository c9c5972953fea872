# tests/test_script_executor.py

from __future__ import annotations

import sys

import pytest

from relay.infra.script_executor import SubprocessScriptExecutor
from relay.service.errors import ScriptError


@pytest.mark.asyncio
async def test_script_reads_response_from_stdin(tmp_path) -> None:
    out = tmp_path / "seen.txt"
    script = f"import sys; open({str(out)!r}, 'w').write(sys.stdin.read())"

    await SubprocessScriptExecutor([sys.executable, "-c"]).execute(script, '{"id": 7}', 10.0)

    assert out.read_text() == '{"id": 7}'


@pytest.mark.asyncio
async def test_non_zero_exit_raises_script_error() -> None:
    script = "import sys; sys.stderr.write('bad payload'); sys.exit(3)"

    with pytest.raises(ScriptError) as exc_info:
        await SubprocessScriptExecutor().execute(script, "", 10.0)

    assert "code 3" in str(exc_info.value)
    assert "bad payload" in str(exc_info.value)
    assert exc_info.value.code is None


@pytest.mark.asyncio
async def test_timeout_raises_script_error() -> None:
    with pytest.raises(ScriptError, match="timed out"):
        await SubprocessScriptExecutor().execute("import time; time.sleep(30)", "", 0.3)


@pytest.mark.asyncio
async def test_missing_interpreter_raises_script_error() -> None:
    with pytest.raises(ScriptError, match="script start failed"):
        await SubprocessScriptExecutor(["/nonexistent/interpreter"]).execute("x", "", 1.0)
