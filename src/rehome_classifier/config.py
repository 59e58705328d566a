from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/rehome.toml")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0


@dataclass(frozen=True)
class ClassifierConfig:
    model_dir: Path = Path("/data/classifier/models")
    active_model: str = "rehome_mobilenet_v2_v1"
    backbone: str = "mobilenet_v2"
    # Torchvision weights name ("DEFAULT", "IMAGENET1K_V1"), "none", or a state dict path
    backbone_source: str = "DEFAULT"
    cut_layer: str = ""
    labels: tuple[str, ...] = ("books", "clothes", "electronics", "ewaste", "furniture")
    hidden_units: tuple[int, int] = (256, 128)
    dropout: float = 0.3
    learning_rate: float = 1e-3
    input_size: int = 224
    seed: int = 42
    max_concurrent: int = 2
    serialize_inference: bool = True
    eager_load: bool = False
    load_retries: int = 2
    load_backoff_seconds: float = 0.5
    load_timeout_seconds: int = 120
    predict_timeout_seconds: int = 10
    fetch_timeout_seconds: int = 10
    allowed_origins: tuple[str, ...] = ()
    uncertain_threshold: float = 0.5
    max_image_mb: int = 10
    max_image_side_px: int = 8192


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the API key check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    classifier: ClassifierConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("REHOME_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def default(cls) -> Settings:
        return cls(app=AppConfig(), classifier=ClassifierConfig(), security=SecurityConfig())

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            classifier=_load_classifier_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            classifier=_merge_classifier(base.classifier, _toml_table(raw, "classifier")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    return a


def _load_classifier_from_env() -> ClassifierConfig:
    data: dict[str, object] = {}
    for key in _CLASSIFIER_KEYS:
        val = os.getenv(f"CLASSIFIER__{key.upper()}")
        if val is not None:
            data[key] = val
    return _merge_classifier(ClassifierConfig(), data)


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    return out


_CLASSIFIER_KEYS: Final[tuple[str, ...]] = (
    "model_dir",
    "active_model",
    "backbone",
    "backbone_source",
    "cut_layer",
    "labels",
    "hidden_units",
    "dropout",
    "learning_rate",
    "input_size",
    "seed",
    "max_concurrent",
    "serialize_inference",
    "eager_load",
    "load_retries",
    "load_backoff_seconds",
    "load_timeout_seconds",
    "predict_timeout_seconds",
    "fetch_timeout_seconds",
    "allowed_origins",
    "uncertain_threshold",
    "max_image_mb",
    "max_image_side_px",
)


def _merge_classifier(base: ClassifierConfig, data: dict[str, object]) -> ClassifierConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    for key in ("active_model", "backbone", "backbone_source", "cut_layer"):
        if key in data:
            out = replace(out, **{key: str(data[key]).strip()})
    if "labels" in data:
        labels = _str_tuple(data["labels"])
        if len(labels) < 2 or len(set(labels)) != len(labels):
            raise RuntimeError("classifier.labels must hold at least two distinct labels")
        out = replace(out, labels=labels)
    if "allowed_origins" in data:
        out = replace(out, allowed_origins=_str_tuple(data["allowed_origins"]))
    if "hidden_units" in data:
        units = tuple(int(u) for u in _str_tuple(data["hidden_units"]))
        if len(units) != 2 or min(units) < 1:
            raise RuntimeError("classifier.hidden_units must be two positive integers")
        out = replace(out, hidden_units=(units[0], units[1]))
    for key in ("dropout", "learning_rate", "load_backoff_seconds", "uncertain_threshold"):
        if key in data:
            out = replace(out, **{key: float(str(data[key]))})
    for key in (
        "input_size",
        "seed",
        "max_concurrent",
        "load_retries",
        "load_timeout_seconds",
        "predict_timeout_seconds",
        "fetch_timeout_seconds",
        "max_image_mb",
        "max_image_side_px",
    ):
        if key in data:
            out = replace(out, **{key: int(str(data[key]))})
    if "serialize_inference" in data:
        out = replace(out, serialize_inference=_as_bool(data["serialize_inference"]))
    if "eager_load" in data:
        out = replace(out, eager_load=_as_bool(data["eager_load"]))
    if out.max_concurrent < 1:
        raise RuntimeError("classifier.max_concurrent must be >= 1")
    if out.input_size < 32:
        raise RuntimeError("classifier.input_size must be >= 32")
    if not (0.0 <= out.dropout < 1.0):
        raise RuntimeError("classifier.dropout must be within [0,1)")
    return out


def _str_tuple(v: object) -> tuple[str, ...]:
    # TOML gives lists; env gives comma-separated strings
    items: list[object] = list(v) if isinstance(v, list | tuple) else str(v).split(",")
    return tuple(s for s in (str(i).strip() for i in items) if s)


def _as_bool(v: object) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classifier.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classifier.max_image_side_px),
        )
