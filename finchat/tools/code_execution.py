import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from finchat.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

_ERROR_TIPS = {
    "NameError": "Make sure all variables are defined before use. Include the full calculation in your code.",
    "SyntaxError": "Check your Python syntax. Make sure all parentheses, quotes, and indentation are correct.",
    "ModuleNotFoundError": "Only the standard library is guaranteed to be available in the sandbox.",
}


@dataclass
class RunResult:
    exit_code: int
    output: str


class CodeRunner(Protocol):
    async def run(self, code: str) -> RunResult:
        ...


class SubprocessCodeRunner:
    """Runs code in an isolated interpreter subprocess. Meant for local development only."""

    def __init__(self, timeout_ms: int = 20000, python: str | None = None) -> None:
        self._timeout_s = max(1.0, timeout_ms / 1000.0)
        self._python = python or sys.executable

    async def run(self, code: str) -> RunResult:
        proc = await asyncio.create_subprocess_exec(
            self._python,
            "-I",
            "-c",
            code,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return RunResult(exit_code=124, output=f"TimeoutError: execution exceeded {self._timeout_s:.0f}s")
        return RunResult(exit_code=proc.returncode or 0, output=stdout.decode("utf-8", errors="replace"))


class CodeExecutionArgs(BaseModel):
    code: str = Field(min_length=1)
    description: Optional[str] = None


def _with_tip(output: str) -> str:
    for marker, tip in _ERROR_TIPS.items():
        if marker in output:
            return f"{output}\n\n💡 **Tip**: {tip}"
    return output


def format_success(code: str, output: str, elapsed_ms: int, description: str | None) -> str:
    lines = ["🐍 **Python Code Execution**"]
    if description:
        lines.append(f"**Description**: {description}")
    lines.extend(
        [
            "",
            "```python",
            code,
            "```",
            "",
            "**Output:**",
            "```",
            output or "(No output produced)",
            "```",
            "",
            f"⏱️ **Execution Time**: {elapsed_ms}ms",
        ]
    )
    return "\n".join(lines)


def build_code_tool(runner: CodeRunner | None, *, max_chars: int = 10000) -> ToolSpec:
    async def code_execution(args: CodeExecutionArgs, ctx: ToolContext) -> str:
        if len(args.code) > max_chars:
            return f"🚫 **Error**: Code too long. Please limit your code to {max_chars:,} characters."
        if runner is None:
            return "❌ **Configuration Error**: Code execution is not configured on this server."
        started = time.perf_counter()
        result = await runner.run(args.code)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info("codeExecution session_id=%s exit_code=%s elapsed_ms=%s", ctx.session_id, result.exit_code, elapsed_ms)
        if result.exit_code != 0:
            return f"❌ **Execution Error**: {_with_tip(result.output or 'Unknown execution error')}"
        return format_success(args.code, result.output.rstrip("\n"), elapsed_ms, args.description)

    return ToolSpec(
        name="codeExecution",
        description=(
            "Execute Python code for financial modeling, data analysis and calculations. "
            "Always print() the results you want to see."
        ),
        args_model=CodeExecutionArgs,
        executor=code_execution,
    )
