from __future__ import annotations

from pathlib import Path

import pytest

from rehome_classifier.config import Limits, Settings


def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Point to a non-existent TOML so only env values apply
    monkeypatch.setenv("REHOME_CONFIG", (tmp_path / "missing.toml").as_posix())


def test_defaults_match_five_category_label_set() -> None:
    s = Settings.default()
    assert s.classifier.labels == ("books", "clothes", "electronics", "ewaste", "furniture")
    assert s.classifier.input_size == 224
    assert s.classifier.hidden_units == (256, 128)
    assert s.classifier.max_concurrent == 2
    assert s.classifier.serialize_inference is True
    assert s.security.api_key == ""


def test_env_overrides_happy_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("CLASSIFIER__MODEL_DIR", (tmp_path / "models").as_posix())
    monkeypatch.setenv("CLASSIFIER__MAX_CONCURRENT", "4")
    monkeypatch.setenv("CLASSIFIER__HIDDEN_UNITS", "64,32")
    monkeypatch.setenv("CLASSIFIER__ALLOWED_ORIGINS", "cdn.rehome.app, *.supabase.co")
    monkeypatch.setenv("CLASSIFIER__SERIALIZE_INFERENCE", "false")
    monkeypatch.setenv("CLASSIFIER__LOAD_BACKOFF_SECONDS", "0.25")
    monkeypatch.setenv("APP__THREADS", "3")
    monkeypatch.setenv("SECURITY__API_KEY", "k")
    s = Settings.load()
    assert s.classifier.model_dir == tmp_path / "models"
    assert s.classifier.max_concurrent == 4
    assert s.classifier.hidden_units == (64, 32)
    assert s.classifier.allowed_origins == ("cdn.rehome.app", "*.supabase.co")
    assert s.classifier.serialize_inference is False
    assert s.classifier.load_backoff_seconds == 0.25
    assert s.app.threads == 3
    assert s.security.api_key == "k"


def test_toml_overrides_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text(
        """
[app]
threads = 6

[classifier]
labels = ["books", "clothes", "toys"]
backbone = "resnet18"
eager_load = true
uncertain_threshold = 0.42

[security]
api_key = "secret"
""".strip(),
        encoding="utf-8",
    )
    monkeypatch.setenv("REHOME_CONFIG", p.as_posix())
    monkeypatch.setenv("CLASSIFIER__BACKBONE", "mobilenet_v2")
    s = Settings.load()
    assert s.app.threads == 6
    assert s.classifier.labels == ("books", "clothes", "toys")
    assert s.classifier.backbone == "resnet18"
    assert s.classifier.eager_load is True
    assert abs(s.classifier.uncertain_threshold - 0.42) < 1e-9
    assert s.security.api_key == "secret"


def test_security_api_key_enabled_false_disables_key(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text('[security]\napi_key = "secret"\napi_key_enabled = false\n', encoding="utf-8")
    monkeypatch.setenv("REHOME_CONFIG", p.as_posix())
    assert Settings.load().security.api_key == ""


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("CLASSIFIER__MAX_CONCURRENT", "0"),
        ("CLASSIFIER__INPUT_SIZE", "16"),
        ("CLASSIFIER__DROPOUT", "1.5"),
        ("CLASSIFIER__HIDDEN_UNITS", "64"),
        ("CLASSIFIER__LABELS", " , "),
        ("CLASSIFIER__LABELS", "books"),
        ("CLASSIFIER__LABELS", "books,books"),
    ],
)
def test_invalid_values_raise(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, key: str, value: str
) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv(key, value)
    with pytest.raises(RuntimeError):
        Settings.load()


def test_invalid_toml_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text("[classifier\nlabels = ", encoding="utf-8")
    monkeypatch.setenv("REHOME_CONFIG", p.as_posix())
    with pytest.raises(RuntimeError):
        Settings.load()


def test_limits_from_settings() -> None:
    lim = Limits.from_settings(Settings.default())
    assert lim.max_bytes == 10 * 1024 * 1024
    assert lim.max_side_px == 8192
