"""Load settings.yaml into typed dataclasses: provider catalog, retry, OCR, prompts."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

VALID_MODES = ("image", "text")


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    api_key_env: str
    default_model: str
    models: list[str]
    timeout_sec: int
    max_tokens: int
    fast_max_tokens: int
    vision: bool = True
    base_url: str | None = None

    def sanitize_model(self, model: str | None) -> str:
        """Return ``model`` if it is allow-listed, else the provider default."""
        if model in self.models:
            return model
        if model:
            logger.warning(
                "Invalid %s model specified: %s. Using default model: %s",
                self.name, model, self.default_model,
            )
        return self.default_model


@dataclass
class PromptsConfig:
    initial: str
    fast_text: str
    debug: str
    debug_ocr_suffix: str
    history_marker: str
    screenshots_hint: str


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    max_delay_sec: float = 5.0


@dataclass
class OcrConfig:
    lang: str = "eng"
    engine_mode: int = 0
    page_seg_mode: int = 6
    separator: str = "\n\n---\n\n"
    max_chars: int = 4000


@dataclass
class DefaultsConfig:
    provider: str
    mode: str = "image"
    language: str = "python"
    opacity: float = 1.0
    queue_size: int = 5


@dataclass
class AppSettings:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    prompts: PromptsConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppSettings:
    """Load and validate static settings from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if the
    default provider is not in the provider catalog.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    providers: dict[str, ProviderConfig] = {}
    for provider_name, provider_raw in raw["providers"].items():
        models = [str(m) for m in provider_raw["models"]]
        default_model = str(provider_raw.get("default_model") or models[0])
        if default_model not in models:
            models.insert(0, default_model)
        providers[provider_name] = ProviderConfig(
            name=provider_name,
            sdk=provider_raw["sdk"],
            api_key_env=provider_raw["api_key_env"],
            default_model=default_model,
            models=models,
            timeout_sec=int(provider_raw["timeout_sec"]),
            max_tokens=int(provider_raw["max_tokens"]),
            fast_max_tokens=int(provider_raw.get("fast_max_tokens", 256)),
            vision=bool(provider_raw.get("vision", True)),
            base_url=provider_raw.get("base_url"),
        )

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        provider=str(defaults_raw["provider"]),
        mode=str(defaults_raw.get("mode", "image")),
        language=str(defaults_raw.get("language", "python")),
        opacity=float(defaults_raw.get("opacity", 1.0)),
        queue_size=int(defaults_raw.get("queue_size", 5)),
    )
    if defaults.provider not in providers:
        raise ValueError(f"Default provider '{defaults.provider}' is not configured")
    if defaults.mode not in VALID_MODES:
        raise ValueError(f"Default mode must be one of {VALID_MODES}, got '{defaults.mode}'")

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        initial=prompts_raw["initial"],
        fast_text=prompts_raw["fast_text"],
        debug=prompts_raw["debug"],
        debug_ocr_suffix=prompts_raw.get("debug_ocr_suffix", "\n{ocr_text}\n"),
        history_marker=prompts_raw["history_marker"],
        screenshots_hint=prompts_raw["screenshots_hint"],
    )

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_attempts=int(retry_raw.get("max_attempts", 3)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", 1.0)),
        max_delay_sec=float(retry_raw.get("max_delay_sec", 5.0)),
    )

    ocr_raw = raw.get("ocr", {})
    ocr = OcrConfig(
        lang=str(ocr_raw.get("lang", "eng")),
        engine_mode=int(ocr_raw.get("engine_mode", 0)),
        page_seg_mode=int(ocr_raw.get("page_seg_mode", 6)),
        separator=str(ocr_raw.get("separator", "\n\n---\n\n")),
        max_chars=int(ocr_raw.get("max_chars", 4000)),
    )

    logger.debug("Loaded %d providers from %s", len(providers), settings_path)

    return AppSettings(
        defaults=defaults,
        providers=providers,
        prompts=prompts,
        retry=retry,
        ocr=ocr,
    )
