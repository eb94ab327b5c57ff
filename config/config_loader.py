"""Load settings.yaml into typed dataclasses. Reports which provider keys are set."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# Stall windows below this are raised to it
MIN_STALL_TIMEOUT_SEC = 15.0


@dataclass
class ProviderConfig:
    name: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int | None = None
    base_url: str | None = None
    ping_model: str | None = None


@dataclass
class PromptsConfig:
    rebuttal: str
    convergence: str
    synthesis: str
    ensemble_vote: str
    ensemble_synthesis: str
    summary: str
    title: str
    web_search: str


@dataclass
class DefaultsConfig:
    models: list[str]
    synthesizer: str
    judge: str
    mode: str = "debate"
    max_rounds: int = 3
    title_model: str | None = None
    web_search_model: str | None = None
    output_dir: Path = Path("./output")
    conversations_file: Path = Path("./data/conversations.json")
    gateway_url: str | None = None
    max_concurrency: int = 8


@dataclass
class StreamingConfig:
    stall_timeout_sec: float = 90.0

    def __post_init__(self) -> None:
        self.stall_timeout_sec = max(MIN_STALL_TIMEOUT_SEC, float(self.stall_timeout_sec))


@dataclass
class ContextConfig:
    summary_threshold_tokens: int = 60000
    chars_per_token: int = 4
    message_overhead_tokens: int = 4
    position_preview_chars: int = 500


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    prompts: PromptsConfig
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    available_providers: set[str] = field(default_factory=set)


def provider_api_key(config: ProviderConfig) -> str:
    return os.environ.get(config.api_key_env, "").strip()


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        models=[str(m) for m in defaults_raw["models"]],
        synthesizer=str(defaults_raw["synthesizer"]),
        judge=str(defaults_raw["judge"]),
        mode=str(defaults_raw.get("mode", "debate")),
        max_rounds=int(defaults_raw.get("max_rounds", 3)),
        title_model=defaults_raw.get("title_model") or defaults_raw["judge"],
        web_search_model=defaults_raw.get("web_search_model"),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        conversations_file=Path(defaults_raw.get("conversations_file", "./data/conversations.json")),
        gateway_url=defaults_raw.get("gateway_url"),
        max_concurrency=int(defaults_raw.get("max_concurrency", 8)),
    )
    if defaults.max_rounds < 1:
        raise ValueError(f"defaults.max_rounds must be >= 1, got {defaults.max_rounds}")

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        rebuttal=prompts_raw["rebuttal"],
        convergence=prompts_raw["convergence"],
        synthesis=prompts_raw["synthesis"],
        ensemble_vote=prompts_raw["ensemble_vote"],
        ensemble_synthesis=prompts_raw["ensemble_synthesis"],
        summary=prompts_raw["summary"],
        title=prompts_raw["title"],
        web_search=prompts_raw["web_search"],
    )

    streaming = StreamingConfig(**(raw.get("streaming") or {}))
    context = ContextConfig(**(raw.get("context") or {}))
    server = ServerConfig(**(raw.get("server") or {}))

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_name, provider_raw in raw["providers"].items():
        max_tokens = provider_raw.get("max_tokens")
        provider_cfg = ProviderConfig(
            name=provider_name,
            api_key_env=provider_raw["api_key_env"],
            timeout_sec=int(provider_raw["timeout_sec"]),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            base_url=provider_raw.get("base_url"),
            ping_model=provider_raw.get("ping_model"),
        )
        providers[provider_name] = provider_cfg

        if provider_api_key(provider_cfg):
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                provider_cfg.api_key_env,
            )

    return AppConfig(
        defaults=defaults,
        providers=providers,
        prompts=prompts,
        streaming=streaming,
        context=context,
        server=server,
        available_providers=available_providers,
    )
