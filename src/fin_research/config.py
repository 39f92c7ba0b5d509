"""Runtime configuration for the research loop, providers, and cache."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_PROVIDERS = ("financialdatasets", "yahoo")
SUPPORTED_SYNTH_AGENTS = ("none", "claude", "codex", "gemini")
# Flat per-call estimate; with the default step and cost caps both bind at 20 dispatches.
DEFAULT_CAPABILITY_PRICING = "*:0.05"

_PROVIDER_ALIASES = {
    "financialdatasets": "financialdatasets",
    "financial-datasets": "financialdatasets",
    "yahoo": "yahoo",
    "yahoo-finance": "yahoo",
}


@dataclass(slots=True)
class CacheSettings:
    """Advisory provider-response cache settings."""

    directory: Path = Path(".fin_research/cache")
    ttl_seconds: int = 86_400
    enabled: bool = True


@dataclass(slots=True)
class ProviderSettings:
    """Financial data provider settings."""

    provider: str = "financialdatasets"
    financial_datasets_api_key: str | None = None
    financial_datasets_base_url: str = "https://api.financialdatasets.ai"
    yahoo_base_url: str = "https://query2.finance.yahoo.com"
    http_timeout_seconds: float = 20.0


@dataclass(slots=True)
class LoopSettings:
    """Budget, retry, and loop-detection limits for one research session."""

    max_steps: int = 20
    max_cost_usd: float = 1.0
    max_concurrency: int = 4
    max_attempts: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    call_timeout_seconds: float = 30.0
    loop_threshold: int = 3
    retry_ceiling: int = 2
    lease_stale_seconds: int = 1_800
    capability_pricing: str = DEFAULT_CAPABILITY_PRICING


@dataclass(slots=True)
class SynthesisSettings:
    """Final-answer synthesis settings (optional CLI agent)."""

    agent: str = "none"
    model: str = ""
    claude_command_template: str = "claude -p --model {model} -- {prompt}"
    codex_command_template: str = "codex exec {model} {prompt}"
    gemini_command_template: str = "gemini --model {model} --prompt {prompt}"
    timeout_seconds: int = 300

    def command_template_for(self, agent: str) -> str:
        """Return the configured command template for one agent."""

        templates = {
            "claude": self.claude_command_template,
            "codex": self.codex_command_template,
            "gemini": self.gemini_command_template,
        }
        try:
            return templates[agent]
        except KeyError as error:
            raise ValueError(f"Unsupported synthesis agent: {agent!r}") from error


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".fin_research/fin_research.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    cache: CacheSettings = field(default_factory=CacheSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    synthesis: SynthesisSettings = field(default_factory=SynthesisSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            db_path=db_path
            or Path(os.getenv("FIN_RESEARCH_DB_PATH", ".fin_research/fin_research.db")),
            sqlite_busy_timeout_ms=int(os.getenv("FIN_RESEARCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("FIN_RESEARCH_LOG_LEVEL", "WARNING").strip().upper(),
            cache=CacheSettings(
                directory=Path(os.getenv("FIN_RESEARCH_CACHE_DIR", ".fin_research/cache")),
                ttl_seconds=int(os.getenv("FIN_RESEARCH_CACHE_TTL_SECONDS", "86400")),
                enabled=(
                    _env_bool("FIN_RESEARCH_CACHE_ENABLED", default=True)
                    and not _env_bool("DISABLE_CACHE", default=False)
                ),
            ),
            providers=ProviderSettings(
                provider=normalize_provider_name(
                    os.getenv("FIN_RESEARCH_PROVIDER", os.getenv("FINANCIAL_PROVIDER", ""))
                    or "financialdatasets",
                ),
                financial_datasets_api_key=(
                    os.getenv("FIN_RESEARCH_FINANCIAL_DATASETS_API_KEY")
                    or os.getenv("FINANCIAL_DATASETS_API_KEY")
                    or None
                ),
                financial_datasets_base_url=os.getenv(
                    "FIN_RESEARCH_FINANCIAL_DATASETS_BASE_URL",
                    "https://api.financialdatasets.ai",
                ),
                yahoo_base_url=os.getenv(
                    "FIN_RESEARCH_YAHOO_BASE_URL",
                    "https://query2.finance.yahoo.com",
                ),
                http_timeout_seconds=float(
                    os.getenv("FIN_RESEARCH_HTTP_TIMEOUT_SECONDS", "20.0"),
                ),
            ),
            loop=LoopSettings(
                max_steps=int(os.getenv("FIN_RESEARCH_MAX_STEPS", "20")),
                max_cost_usd=float(os.getenv("FIN_RESEARCH_MAX_COST_USD", "1.0")),
                max_concurrency=int(os.getenv("FIN_RESEARCH_MAX_CONCURRENCY", "4")),
                max_attempts=int(os.getenv("FIN_RESEARCH_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("FIN_RESEARCH_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("FIN_RESEARCH_RETRY_MAX_SECONDS", "30.0")),
                call_timeout_seconds=float(
                    os.getenv("FIN_RESEARCH_CALL_TIMEOUT_SECONDS", "30.0"),
                ),
                loop_threshold=int(os.getenv("FIN_RESEARCH_LOOP_THRESHOLD", "3")),
                retry_ceiling=int(os.getenv("FIN_RESEARCH_RETRY_CEILING", "2")),
                lease_stale_seconds=int(os.getenv("FIN_RESEARCH_LEASE_STALE_SECONDS", "1800")),
                capability_pricing=os.getenv("FIN_RESEARCH_CAPABILITY_PRICING", DEFAULT_CAPABILITY_PRICING),
            ),
            synthesis=SynthesisSettings(
                agent=os.getenv("FIN_RESEARCH_SYNTH_AGENT", "none").strip().lower() or "none",
                model=os.getenv("FIN_RESEARCH_SYNTH_MODEL", "").strip(),
                claude_command_template=os.getenv(
                    "FIN_RESEARCH_CLAUDE_COMMAND_TEMPLATE",
                    "claude -p --model {model} -- {prompt}",
                ),
                codex_command_template=os.getenv(
                    "FIN_RESEARCH_CODEX_COMMAND_TEMPLATE",
                    "codex exec {model} {prompt}",
                ),
                gemini_command_template=os.getenv(
                    "FIN_RESEARCH_GEMINI_COMMAND_TEMPLATE",
                    "gemini --model {model} --prompt {prompt}",
                ),
                timeout_seconds=int(os.getenv("FIN_RESEARCH_SYNTH_TIMEOUT_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error when a limit or choice is out of range."""

        if self.loop.max_steps <= 0:
            raise ValueError("FIN_RESEARCH_MAX_STEPS must be > 0.")
        if self.loop.max_cost_usd < 0:
            raise ValueError("FIN_RESEARCH_MAX_COST_USD must be >= 0.")
        if self.loop.max_concurrency <= 0:
            raise ValueError("FIN_RESEARCH_MAX_CONCURRENCY must be > 0.")
        if self.loop.max_attempts <= 0:
            raise ValueError("FIN_RESEARCH_MAX_ATTEMPTS must be > 0.")
        if self.loop.retry_base_seconds < 0 or self.loop.retry_max_seconds < 0:
            raise ValueError("FIN_RESEARCH_RETRY_*_SECONDS must be >= 0.")
        if self.loop.call_timeout_seconds <= 0:
            raise ValueError("FIN_RESEARCH_CALL_TIMEOUT_SECONDS must be > 0.")
        if self.loop.loop_threshold <= 0:
            raise ValueError("FIN_RESEARCH_LOOP_THRESHOLD must be > 0.")
        if self.loop.retry_ceiling <= 0:
            raise ValueError("FIN_RESEARCH_RETRY_CEILING must be > 0.")
        if self.cache.ttl_seconds <= 0:
            raise ValueError("FIN_RESEARCH_CACHE_TTL_SECONDS must be > 0.")
        if self.providers.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported FIN_RESEARCH_PROVIDER: {self.providers.provider!r}. "
                f"Expected one of {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        for name, url in (
            ("FIN_RESEARCH_FINANCIAL_DATASETS_BASE_URL", self.providers.financial_datasets_base_url),
            ("FIN_RESEARCH_YAHOO_BASE_URL", self.providers.yahoo_base_url),
        ):
            _validate_base_url(name, url)
        if self.synthesis.agent not in SUPPORTED_SYNTH_AGENTS:
            raise ValueError(
                f"Unsupported FIN_RESEARCH_SYNTH_AGENT: {self.synthesis.agent!r}. "
                f"Expected one of {', '.join(SUPPORTED_SYNTH_AGENTS)}.",
            )


def normalize_provider_name(value: str) -> str:
    """Map provider aliases onto canonical provider names."""

    normalized = value.strip().lower()
    return _PROVIDER_ALIASES.get(normalized, normalized)


def _validate_base_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
