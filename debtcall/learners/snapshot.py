from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ..config import EngineConfig
from ..context import FEATURE_NAMES
from ..domain import Action
from ..errors import SerializationError
from .table import ActionValueStore, ActionValueTable, BanditParams, QTableParams, fresh_table


class BanditHyperparameters(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, populate_by_name=True)
    learning_rate: float = Field(alias="learningRate", gt=0.0)
    epsilon: float = Field(ge=0.0, le=1.0)


class QHyperparameters(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, populate_by_name=True)
    alpha: float = Field(gt=0.0, le=1.0)
    gamma: float = Field(ge=0.0, le=1.0)
    epsilon: float = Field(ge=0.0, le=1.0)
    initial_q: float = Field(alias="initialQ")


class BanditParameters(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, populate_by_name=True)
    feature_names: list[str] = Field(alias="featureNames")
    weights: dict[Action, list[float]]

    @model_validator(mode="after")
    def _aligned(self) -> "BanditParameters":
        if tuple(self.feature_names) != FEATURE_NAMES:
            raise ValueError("featureNames do not match the engine feature set")
        n = len(self.feature_names)
        for action, w in self.weights.items():
            if len(w) != n:
                raise ValueError(f"weights for {action} have {len(w)} entries, expected {n}")
        return self


class QParameters(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)
    rows: dict[str, dict[Action, float]]

    @model_validator(mode="after")
    def _keys(self) -> "QParameters":
        for key in self.rows:
            if not key.startswith("fsm:"):
                raise ValueError(f"malformed state key: {key!r}")
        return self


class BanditSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: Literal["bandit"]
    version: int = Field(default=0, ge=0)
    episodes_trained: int = Field(alias="episodesTrained", ge=0)
    hyperparameters: BanditHyperparameters
    parameters: BanditParameters


class QSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    type: Literal["qlearning"]
    version: int = Field(default=0, ge=0)
    episodes_trained: int = Field(alias="episodesTrained", ge=0)
    hyperparameters: QHyperparameters
    parameters: QParameters


Snapshot = Annotated[Union[BanditSnapshot, QSnapshot], Field(discriminator="type")]

_snapshot_adapter = TypeAdapter(Snapshot)


def export_snapshot(table: ActionValueTable) -> dict[str, Any]:
    try:
        model = _to_model(table)
    except ValidationError as exc:
        raise SerializationError(f"table cannot be exported: {exc.errors()[0]['msg']}") from exc
    return model.model_dump(mode="json", by_alias=True)


def _to_model(table: ActionValueTable) -> Union[BanditSnapshot, QSnapshot]:
    p = table.params
    if table.kind == "bandit" and isinstance(p, BanditParams):
        model: Union[BanditSnapshot, QSnapshot] = BanditSnapshot(
            type="bandit",
            version=table.version,
            episodes_trained=table.episodes_trained,
            hyperparameters=BanditHyperparameters(learning_rate=p.learning_rate, epsilon=p.epsilon),
            parameters=BanditParameters(
                feature_names=list(p.feature_names),
                weights={a: list(w) for a, w in p.weights.items()},
            ),
        )
    elif table.kind == "qlearning" and isinstance(p, QTableParams):
        model = QSnapshot(
            type="qlearning",
            version=table.version,
            episodes_trained=table.episodes_trained,
            hyperparameters=QHyperparameters(
                alpha=p.alpha, gamma=p.gamma, epsilon=p.epsilon, initial_q=p.initial_q
            ),
            parameters=QParameters(rows={k: dict(v) for k, v in p.rows.items()}),
        )
    else:
        raise SerializationError(f"table kind {table.kind} does not match its parameters")
    return model


def import_snapshot(blob: Any) -> ActionValueTable:
    """Validate a snapshot (dict, JSON text or bytes) and rebuild its table."""
    try:
        if isinstance(blob, (str, bytes, bytearray)):
            snap = _snapshot_adapter.validate_json(blob)
        else:
            snap = _snapshot_adapter.validate_python(blob)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise SerializationError(f"invalid snapshot at {where or '<root>'}: {first['msg']}") from exc

    if isinstance(snap, BanditSnapshot):
        return ActionValueTable(
            kind="bandit",
            params=BanditParams(
                feature_names=tuple(snap.parameters.feature_names),
                weights={a: tuple(w) for a, w in snap.parameters.weights.items()},
                learning_rate=snap.hyperparameters.learning_rate,
                epsilon=snap.hyperparameters.epsilon,
            ),
            episodes_trained=snap.episodes_trained,
            version=snap.version,
        )
    return ActionValueTable(
        kind="qlearning",
        params=QTableParams(
            rows={k: dict(v) for k, v in snap.parameters.rows.items()},
            alpha=snap.hyperparameters.alpha,
            gamma=snap.hyperparameters.gamma,
            epsilon=snap.hyperparameters.epsilon,
            initial_q=snap.hyperparameters.initial_q,
        ),
        episodes_trained=snap.episodes_trained,
        version=snap.version,
    )


def dumps_snapshot(table: ActionValueTable) -> str:
    return json.dumps(export_snapshot(table), sort_keys=True, separators=(",", ":"))


def save_snapshot(path: str | os.PathLike[str], table: ActionValueTable) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(dumps_snapshot(table), encoding="utf-8")
    os.replace(tmp, target)
    return target


def load_snapshot(path: str | os.PathLike[str]) -> ActionValueTable:
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise SerializationError(f"cannot read snapshot {path}: {exc}") from exc
    return import_snapshot(raw)


def load_store_from_file(path: str | os.PathLike[str]) -> ActionValueStore:
    # A corrupt file raises here, so a server never starts on a partial table.
    return ActionValueStore(load_snapshot(path))


def build_store(cfg: EngineConfig) -> ActionValueStore:
    """The serving store: the configured snapshot when there is one, else a fresh table."""
    if cfg.snapshot_path:
        return load_store_from_file(cfg.snapshot_path)
    return ActionValueStore(
        fresh_table(
            cfg.learner_kind,
            learning_rate=cfg.learning_rate,
            epsilon=cfg.epsilon,
            alpha=cfg.alpha,
            gamma=cfg.gamma,
            initial_q=cfg.initial_q,
        )
    )
