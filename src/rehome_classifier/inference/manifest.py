from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    backbone: str
    cut_layer: str
    labels: tuple[str, ...]
    input_size: int
    hidden_units: tuple[int, int]
    preprocess_hash: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    val_acc: float = 0.0

    @property
    def n_classes(self) -> int:
        return len(self.labels)

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now(UTC)
        val_acc = float(str(d.get("val_acc", 0.0)))
        if not (0.0 <= val_acc <= 1.0):
            raise ValueError("val_acc must be within [0,1]")
        input_size = int(str(d.get("input_size", 224)))
        if input_size < 32:
            raise ValueError("input_size must be >= 32")
        labels_obj = d.get("labels")
        if not isinstance(labels_obj, list) or not labels_obj:
            raise ValueError("labels must be a non-empty list")
        labels = tuple(str(x).strip() for x in labels_obj)
        if len(labels) < 2 or len(set(labels)) != len(labels):
            raise ValueError("labels must hold at least two distinct entries")
        hidden_obj = d.get("hidden_units", [256, 128])
        if not isinstance(hidden_obj, list) or len(hidden_obj) != 2:
            raise ValueError("hidden_units must be a list of two integers")
        hidden = (int(str(hidden_obj[0])), int(str(hidden_obj[1])))
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        backbone = str(d.get("backbone", "")).strip()
        cut_layer = str(d.get("cut_layer", "")).strip()
        preprocess_hash = str(d.get("preprocess_hash", "")).strip()
        if not schema_version or not model_id or not backbone or not preprocess_hash:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            backbone=backbone,
            cut_layer=cut_layer,
            labels=labels,
            input_size=input_size,
            hidden_units=hidden,
            preprocess_hash=preprocess_hash,
            created_at=created,
            val_acc=val_acc,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "backbone": self.backbone,
            "cut_layer": self.cut_layer,
            "labels": list(self.labels),
            "input_size": self.input_size,
            "hidden_units": list(self.hidden_units),
            "preprocess_hash": self.preprocess_hash,
            "created_at": self.created_at.isoformat(),
            "val_acc": self.val_acc,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
