from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1.1", "v2")
# Shapes a model may declare for its direct output
OUTPUT_SCHEMAS: Final[tuple[str, ...]] = ("logits", "probabilities", "class_label", "features")


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    version: str
    created_at: datetime
    temperature: float
    output_schema: str

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
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        n_classes = int(str(d.get("n_classes", 10)))
        temperature = float(str(d.get("temperature", 1.0)))
        if n_classes != 10:
            raise ValueError("n_classes must be 10 for digit models")
        if temperature <= 0.0:
            raise ValueError("temperature must be > 0")
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        output_schema = str(d.get("output_schema", "logits")).strip()
        if not schema_version or not model_id or not arch or not version:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        if output_schema not in OUTPUT_SCHEMAS:
            raise ValueError("unsupported output schema")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_classes=n_classes,
            version=version,
            created_at=created,
            temperature=temperature,
            output_schema=output_schema,
        )
