from finchat.config import AppConfig
from finchat.tools.artifacts import ARTIFACT_TOOLS
from finchat.tools.code_execution import CodeRunner, SubprocessCodeRunner, build_code_tool
from finchat.tools.registry import ToolCallState, ToolContext, ToolOutcome, ToolRegistry, ToolSpec
from finchat.tools.search import SearchClient, build_search_tools


def build_registry(config: AppConfig, *, code_runner: CodeRunner | None = None, search: SearchClient | None = None) -> ToolRegistry:
    registry = ToolRegistry(timeout_ms=config.tools.timeout_ms)
    for spec in ARTIFACT_TOOLS:
        registry.register(spec)
    for spec in build_search_tools(search or SearchClient(config.search)):
        registry.register(spec)
    if code_runner is None and config.tools.code_execution_mode == "local":
        code_runner = SubprocessCodeRunner(timeout_ms=config.tools.code_timeout_ms)
    registry.register(build_code_tool(code_runner, max_chars=config.tools.code_max_chars))
    return registry


__all__ = [
    "ToolCallState",
    "ToolContext",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
]
