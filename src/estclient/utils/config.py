"""Typed configuration loading for the estimator client."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "configs/estclient.yaml"


class EngineConfig(BaseModel):
    message_kind: str = "OBJECT"
    lot_timeout_s: Optional[float] = Field(default=None, gt=0)
    strict_keys: bool = False


class PredictorConfig(BaseModel):
    depth: int = Field(default=4, ge=1)
    probabilistic: bool = False
    uid: int = 55
    rid: int = Field(default=33, ge=0, le=127)


class ClientConfig(BaseModel):
    name: str = "estclient"
    engine: EngineConfig = Field(default_factory=EngineConfig)
    predictor: PredictorConfig = Field(default_factory=PredictorConfig)


def load_yaml(path: str | Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_client_config(path: Optional[str] = None) -> ClientConfig:
    config_path = path or os.environ.get("ESTCLIENT_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(config_path).exists():
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return ClientConfig()
    data = load_yaml(config_path)
    if "estclient" not in data:
        raise ValueError(f"Invalid config file, expected 'estclient' root at {config_path}")
    return ClientConfig(**(data["estclient"] or {}))


def save_config(config: BaseModel, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump({"estclient": config.model_dump()}, f)
