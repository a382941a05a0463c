"""Persisted per-user configuration: provider, mode, models, language, opacity, keys."""

import logging
import os
import re
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path

import click
import yaml

from config.config_loader import VALID_MODES, AppSettings

logger = logging.getLogger(__name__)

_MIN_OPACITY = 0.1
_MAX_OPACITY = 1.0

# Changes to any of these rebuild the provider clients; opacity does not.
_NOTIFY_FIELDS = frozenset({
    "provider", "mode", "solution_model", "debugging_model",
    "extraction_model", "language", "api_keys",
})


def default_config_path() -> Path:
    return Path(click.get_app_dir("snapsolve")) / "config.yaml"


_KEY_FORMATS: dict[str, Callable[[str], bool]] = {
    "groq": lambda key: bool(re.fullmatch(r"gsk_[A-Za-z0-9]{32,}", key)),
    "gemini": lambda key: len(key) >= 20,
}


def looks_like_api_key(provider: str, key: str) -> bool:
    """Cheap format check for a pasted key. Providers without a known format accept any non-empty key."""
    key = (key or "").strip()
    if not key:
        return False
    check = _KEY_FORMATS.get(provider)
    return check(key) if check else True


@dataclass(frozen=True)
class UserConfig:
    provider: str
    mode: str = "image"
    solution_model: str = ""
    debugging_model: str = ""
    extraction_model: str = ""
    language: str = "python"
    opacity: float = 1.0
    api_keys: dict[str, str] = field(default_factory=dict)

    def model_for_stage(self, stage: str) -> str:
        return {
            "solution": self.solution_model,
            "debugging": self.debugging_model,
            "extraction": self.extraction_model,
        }[stage]


class ConfigStore:
    """YAML-backed configuration record with change notification.

    The file is re-read on every ``load()``; writes go through ``update()``,
    which re-validates and then notifies subscribers.
    """

    def __init__(self, settings: AppSettings, path: Path | None = None) -> None:
        self._settings = settings
        self._path = path or default_config_path()
        self._subscribers: list[Callable[[UserConfig], None]] = []
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def defaults(self) -> UserConfig:
        d = self._settings.defaults
        provider_cfg = self._settings.providers[d.provider]
        return UserConfig(
            provider=d.provider,
            mode=d.mode,
            solution_model=provider_cfg.default_model,
            debugging_model=provider_cfg.default_model,
            extraction_model=provider_cfg.default_model,
            language=d.language,
            opacity=d.opacity,
        )

    def validate(self, config: UserConfig) -> UserConfig:
        """Return a copy of ``config`` with every invalid field replaced by its default."""
        defaults = self.defaults()

        provider = config.provider
        if provider not in self._settings.providers:
            logger.warning("Unknown provider '%s', using '%s'", provider, defaults.provider)
            provider = defaults.provider
        provider_cfg = self._settings.providers[provider]

        mode = config.mode
        if mode not in VALID_MODES:
            logger.warning("Invalid mode '%s', using '%s'", mode, defaults.mode)
            mode = defaults.mode

        try:
            opacity = float(config.opacity)
        except (TypeError, ValueError):
            opacity = defaults.opacity
        opacity = min(_MAX_OPACITY, max(_MIN_OPACITY, opacity))

        api_keys = {
            str(k): str(v).strip()
            for k, v in (config.api_keys or {}).items()
            if v is not None
        }

        return UserConfig(
            provider=provider,
            mode=mode,
            solution_model=provider_cfg.sanitize_model(config.solution_model),
            debugging_model=provider_cfg.sanitize_model(config.debugging_model),
            extraction_model=provider_cfg.sanitize_model(config.extraction_model),
            language=(config.language or "").strip() or defaults.language,
            opacity=opacity,
            api_keys=api_keys,
        )

    def load(self) -> UserConfig:
        """Read, validate and return the persisted config.

        Creates the file from defaults when missing. A corrupt file is logged
        and defaults are returned without overwriting it.
        """
        if not self._path.exists():
            config = self.defaults()
            self.save(config)
            return config

        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.error("Error loading config %s: %s", self._path, exc)
            return self.defaults()

        if not isinstance(raw, dict):
            logger.error("Config %s is not a mapping, using defaults", self._path)
            return self.defaults()

        known = {f.name for f in fields(UserConfig)}
        merged = {**asdict(self.defaults()), **{k: v for k, v in raw.items() if k in known}}
        return self.validate(UserConfig(**merged))

    def save(self, config: UserConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(asdict(config), f, sort_keys=False)

    def update(self, **changes) -> UserConfig:
        """Merge ``changes`` into the stored config, validate, save and notify.

        Raises:
            ValueError: If a change names a field UserConfig does not have.
        """
        known = {f.name for f in fields(UserConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown config field(s): {', '.join(sorted(unknown))}")

        with self._lock:
            current = self.load()
            if "api_keys" in changes:
                changes["api_keys"] = {**current.api_keys, **(changes["api_keys"] or {})}
            # A provider switch re-validates models against the new allow-list
            new_config = self.validate(replace(current, **changes))
            self.save(new_config)

        if _NOTIFY_FIELDS & set(changes):
            for callback in list(self._subscribers):
                callback(new_config)
        return new_config

    def on_change(self, callback: Callable[[UserConfig], None]) -> Callable[[], None]:
        """Subscribe to config updates. Returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def api_key_for(self, provider: str, config: UserConfig | None = None) -> str:
        """Stored key for ``provider``, falling back to its environment variable."""
        config = config or self.load()
        key = config.api_keys.get(provider, "").strip()
        if key:
            return key
        provider_cfg = self._settings.providers.get(provider)
        if provider_cfg is None:
            return ""
        return os.environ.get(provider_cfg.api_key_env, "").strip()

    def has_required_api_key(self) -> bool:
        config = self.load()
        return bool(self.api_key_for(config.provider, config))

    def set_opacity(self, opacity: float) -> UserConfig:
        return self.update(opacity=opacity)

    def toggle_mode(self) -> str:
        current = self.load().mode
        new_mode = "text" if current == "image" else "image"
        self.update(mode=new_mode)
        logger.info("Processing mode set to: %s", new_mode)
        return new_mode
