from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path

import torch

from rehome_classifier.config import Settings
from rehome_classifier.inference.manifest import ModelManifest
from rehome_classifier.inference.model import HeadConfig, load
from rehome_classifier.preprocess import preprocess_signature


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    to_dir: Path
    backbone: str
    cut_layer: str
    input_size: int


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    s = Settings.load().classifier
    ap = argparse.ArgumentParser(description="Write a fresh head and manifest into the models directory")
    ap.add_argument("--model-id", default=s.active_model, help="Model id folder name")
    ap.add_argument("--to-dir", default=s.model_dir.as_posix(), help="Destination models root")
    ap.add_argument("--backbone", default=s.backbone, help="Registered backbone name")
    ap.add_argument("--cut-layer", default=s.cut_layer, help="Backbone layer to truncate at")
    ap.add_argument("--input-size", type=int, default=s.input_size, help="Square input side in px")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        to_dir=Path(str(a.to_dir)),
        backbone=str(a.backbone),
        cut_layer=str(a.cut_layer),
        input_size=int(a.input_size),
    )


def seed_model(args: SeedArgs, settings: Settings) -> Path:
    cfg = settings.classifier
    # Head weights do not depend on backbone weights, so skip the download
    handle = load(
        "none",
        cfg.labels,
        HeadConfig(
            n_classes=len(cfg.labels),
            hidden_units=cfg.hidden_units,
            dropout=cfg.dropout,
            learning_rate=cfg.learning_rate,
        ),
        backbone=args.backbone,
        cut_layer=args.cut_layer,
        input_size=args.input_size,
        model_id=args.model_id,
        seed=cfg.seed,
    )
    man = ModelManifest(
        schema_version="v1",
        model_id=args.model_id,
        backbone=handle.backbone,
        cut_layer=handle.cut_layer,
        labels=handle.labels,
        input_size=handle.input_size,
        hidden_units=cfg.hidden_units,
        preprocess_hash=preprocess_signature(),
    )
    dst = args.to_dir / args.model_id
    dst.mkdir(parents=True, exist_ok=True)
    torch.save(handle.model.head.state_dict(), (dst / "model.pt").as_posix())
    (dst / "manifest.json").write_text(man.to_json(), encoding="utf-8")
    logging.getLogger("rehome_classifier").info(
        "seed_model_written model_id=%s dst=%s", args.model_id, dst.as_posix()
    )
    return dst


def main() -> None:  # pragma: no cover - tiny glue
    from rehome_classifier.logging import init_logging

    init_logging()
    seed_model(parse_args(), Settings.load())


if __name__ == "__main__":
    main()
