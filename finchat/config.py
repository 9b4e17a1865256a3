from dataclasses import dataclass
import os

from dotenv import load_dotenv

load_dotenv()


def _as_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AnthropicConfig:
    api_key: str
    primary_model: str
    fallback_model: str
    temperature: float
    max_output_tokens: int
    request_timeout_ms: int


@dataclass(frozen=True)
class ProviderConfig:
    openai_api_key: str
    openai_model: str
    glm_api_key: str
    glm_base_url: str
    glm_model: str
    ollama_base_url: str
    lmstudio_base_url: str
    local_probe_timeout_ms: int


@dataclass(frozen=True)
class ToolConfig:
    max_iters: int
    timeout_ms: int
    max_parallel_calls: int
    code_max_chars: int
    code_execution_mode: str
    code_timeout_ms: int


@dataclass(frozen=True)
class SearchConfig:
    brave_api_key: str
    twelve_data_api_key: str
    alpha_vantage_api_key: str
    massive_api_key: str
    timeout_ms: int


@dataclass(frozen=True)
class ReportConfig:
    timeout_ms: int
    chart_cache_size: int


@dataclass(frozen=True)
class LoggingConfig:
    level: str


@dataclass(frozen=True)
class AppConfig:
    anthropic: AnthropicConfig
    providers: ProviderConfig
    tools: ToolConfig
    search: SearchConfig
    report: ReportConfig
    logging: LoggingConfig
    app_mode: str
    auth_mode: str
    store_backend: str

    @property
    def is_development(self) -> bool:
        return self.app_mode == "development"

    @staticmethod
    def load() -> "AppConfig":
        return AppConfig(
            anthropic=AnthropicConfig(
                api_key=os.getenv("ANTHROPIC_API_KEY", ""),
                primary_model=os.getenv("CLAUDE_PRIMARY_MODEL", "claude-sonnet-4-5-20250929"),
                fallback_model=os.getenv("CLAUDE_FALLBACK_MODEL", "claude-haiku-4-5-20251001"),
                temperature=_as_float("CLAUDE_TEMPERATURE", 0.2),
                max_output_tokens=_as_int("MAX_OUTPUT_TOKENS", 4000),
                request_timeout_ms=_as_int("REQUEST_TIMEOUT_MS", 60000),
            ),
            providers=ProviderConfig(
                openai_api_key=os.getenv("OPENAI_API_KEY", ""),
                openai_model=os.getenv("OPENAI_MODEL", "gpt-5"),
                glm_api_key=os.getenv("GLM_API_KEY", ""),
                glm_base_url=os.getenv("GLM_BASE_URL", "https://api.z.ai/api/coding/paas/v4"),
                glm_model=os.getenv("GLM_MODEL", "glm-4-plus"),
                ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
                lmstudio_base_url=os.getenv("LMSTUDIO_BASE_URL", "http://localhost:1234"),
                local_probe_timeout_ms=_as_int("LOCAL_PROBE_TIMEOUT_MS", 3000),
            ),
            tools=ToolConfig(
                max_iters=_as_int("TOOL_MAX_ITERS", 8),
                timeout_ms=_as_int("TOOL_TIMEOUT_MS", 30000),
                max_parallel_calls=_as_int("MAX_PARALLEL_TOOL_CALLS", 5),
                code_max_chars=_as_int("CODE_MAX_CHARS", 10000),
                code_execution_mode=os.getenv("CODE_EXECUTION_MODE", "disabled").lower(),
                code_timeout_ms=_as_int("CODE_TIMEOUT_MS", 20000),
            ),
            search=SearchConfig(
                brave_api_key=os.getenv("BRAVE_SEARCH_API_KEY", ""),
                twelve_data_api_key=os.getenv("TWELVE_DATA_API_KEY", ""),
                alpha_vantage_api_key=os.getenv("ALPHA_VANTAGE_API_KEY", ""),
                massive_api_key=os.getenv("MASSIVE_API_KEY", ""),
                timeout_ms=_as_int("SEARCH_TIMEOUT_MS", 15000),
            ),
            report=ReportConfig(
                timeout_ms=_as_int("REPORT_TIMEOUT_MS", 60000),
                chart_cache_size=_as_int("CHART_CACHE_SIZE", 256),
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
            ),
            app_mode=os.getenv("APP_MODE", "production").lower(),
            auth_mode=os.getenv("AUTH_MODE", "none").lower(),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
        )


settings = AppConfig.load()
