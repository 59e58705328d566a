from __future__ import annotations

from pathlib import Path

import pytest
from scripts.seed_model import SeedArgs, parse_args, seed_model

from rehome_classifier.inference.lifecycle import load_from_settings
from rehome_classifier.inference.manifest import ModelManifest
from rehome_classifier.preprocess import preprocess_signature
from tests._fakes import LABELS, make_settings


def test_seed_model_writes_loadable_artifacts(tmp_path: Path) -> None:
    s = make_settings(tmp_path)
    args = SeedArgs(
        model_id="seeded_v1",
        to_dir=tmp_path / "models",
        backbone="mobilenet_v2",
        cut_layer="",
        input_size=32,
    )
    dst = seed_model(args, s)
    assert (dst / "model.pt").exists() and (dst / "manifest.json").exists()
    man = ModelManifest.from_path(dst / "manifest.json")
    assert man.model_id == "seeded_v1"
    assert man.labels == LABELS
    assert man.cut_layer == "features.18"
    assert man.preprocess_hash == preprocess_signature()

    handle = load_from_settings(make_settings(tmp_path, active_model="seeded_v1"))
    assert handle.model_id == "seeded_v1"


def test_parse_args_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("REHOME_CONFIG", (tmp_path / "missing.toml").as_posix())
    a = parse_args(
        ["--model-id", "m2", "--to-dir", tmp_path.as_posix(), "--backbone", "resnet18", "--input-size", "64"]
    )
    assert a == SeedArgs(
        model_id="m2", to_dir=tmp_path, backbone="resnet18", cut_layer="", input_size=64
    )
