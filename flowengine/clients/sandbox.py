# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Code Sandbox

`run(code, language, inputs, timeout_ms) -> SandboxResult`.

SubprocessSandbox runs Python in a separate isolated interpreter
(`python -I`). User code sees its inputs as a read-only mapping named
`inputs` and publishes its result by assigning `output` (or `result`).
Anything printed is captured as logs.
"""

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from flowengine.core.logging import get_logger

logger = get_logger(__name__)

RESULT_MARKER = "__FLOWENGINE_RESULT__"

# Executed inside the child interpreter; reads {"code", "inputs"} on stdin
RUNNER_SOURCE = r'''
import contextlib, io, json, sys, traceback, types

def _freeze(value):
    if isinstance(value, dict):
        return types.MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value

def _thaw(value):
    if isinstance(value, types.MappingProxyType):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value

request = json.loads(sys.stdin.read())
namespace = {"inputs": _freeze(request.get("inputs") or {}), "__name__": "__sandbox__"}
buffer = io.StringIO()
envelope = {"success": True, "output": None, "error": None}
try:
    with contextlib.redirect_stdout(buffer), contextlib.redirect_stderr(buffer):
        exec(compile(request["code"], "<node>", "exec"), namespace)
    output = namespace.get("output", namespace.get("result"))
    envelope["output"] = _thaw(output)
    json.dumps(envelope["output"])
except Exception as exc:
    envelope["success"] = False
    envelope["output"] = None
    envelope["error"] = "".join(traceback.format_exception_only(type(exc), exc)).strip()
envelope["logs"] = buffer.getvalue().splitlines()
sys.stdout.write("%s%s\n" % ("__FLOWENGINE_RESULT__", json.dumps(envelope, default=str)))
'''


class SandboxResult(BaseModel):
    success: bool
    output: Any = None
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = False


class CodeSandbox(Protocol):
    async def run(self, code: str, language: str, inputs: Dict[str, Any], timeout_ms: int) -> SandboxResult:
        ...


class SubprocessSandbox:
    """Runs Python snippets in a child interpreter with a wall-clock limit"""

    supported_languages = ("python",)

    def __init__(self, python_executable: Optional[str] = None, max_log_lines: int = 200):
        self.python_executable = python_executable or sys.executable
        self.max_log_lines = max_log_lines

    async def run(self, code: str, language: str, inputs: Dict[str, Any], timeout_ms: int) -> SandboxResult:
        if language not in self.supported_languages:
            return SandboxResult(success=False, error=f"Unsupported language: {language}")

        payload = json.dumps({"code": code, "inputs": inputs}, default=str).encode()
        process = await asyncio.create_subprocess_exec(
            self.python_executable, "-I", "-c", RUNNER_SOURCE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return SandboxResult(
                success=False,
                error=f"Code execution timed out after {timeout_ms}ms",
                timed_out=True,
            )

        return self._parse(stdout.decode(errors="replace"), stderr.decode(errors="replace"), process.returncode)

    def _parse(self, stdout: str, stderr: str, returncode: int) -> SandboxResult:
        for line in reversed(stdout.splitlines()):
            if line.startswith(RESULT_MARKER):
                envelope = json.loads(line[len(RESULT_MARKER):])
                logs = envelope.get("logs") or []
                return SandboxResult(
                    success=envelope.get("success", False),
                    output=envelope.get("output"),
                    logs=logs[-self.max_log_lines:],
                    error=envelope.get("error"),
                )

        logger.warning("Sandbox produced no result envelope", extra={"returncode": returncode})
        return SandboxResult(
            success=False,
            logs=stderr.splitlines()[-self.max_log_lines:],
            error=f"Sandbox exited with code {returncode}",
        )
