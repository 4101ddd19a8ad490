"""
Provenance of a session run.

One JSON sidecar per session records which stage implementations ran with
which parameters, the outputs each stage produced, and every spatial
transformation applied on the way to the reference space.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .exceptions import ProvenanceError

PROVENANCE_FORMAT = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TransformationRecord:
    """Record of a spatial transformation applied during a run.

    Attributes:
        source_space: Space the data was in (e.g., 'diffusion')
        target_space: Space the data was mapped to (e.g., 'session')
        data_kind: What was transformed ('streamlines' or 'image')
        method: Implementation used (e.g., 'nitransforms')
        interpolation: Interpolation used when sampling images or fields
        transform_files: Files making up the chain, in application order
        timestamp: ISO 8601 timestamp of transformation
    """

    source_space: str
    target_space: str
    data_kind: str
    method: str
    interpolation: str
    transform_files: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for provenance tracking."""
        return {
            "source_space": self.source_space,
            "target_space": self.target_space,
            "data_kind": self.data_kind,
            "method": self.method,
            "interpolation": self.interpolation,
            "transform_files": list(self.transform_files),
            "timestamp": self.timestamp,
        }


@dataclass
class StageRecord:
    """One pipeline stage: what ran, how it was configured, what it produced.

    Attributes:
        stage: Stage name (e.g., 'tracking_masks')
        implementation: Fully qualified class of the stage implementation
        parameters: JSON-serializable parameters of the implementation
        space: Space the stage outputs are expressed in
        outputs: Names of the volumes, streamline sets or matrices produced
        timestamp: ISO 8601 completion time
    """

    stage: str
    implementation: str
    parameters: dict[str, Any]
    space: str
    outputs: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now)

    def __post_init__(self):
        try:
            json.dumps(self.parameters)
        except (TypeError, ValueError) as e:
            raise ProvenanceError(
                f"Parameters of stage '{self.stage}' must be JSON-serializable: {e}"
            ) from e

    @classmethod
    def for_step(
        cls, stage: str, step: object, parameters: dict[str, Any], space: str, outputs=()
    ) -> StageRecord:
        """Record ``step`` (any stage object) under its qualified class name."""
        implementation = f"{type(step).__module__}.{type(step).__name__}"
        return cls(stage, implementation, parameters, space, [str(o) for o in outputs])

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "implementation": self.implementation,
            "parameters": self.parameters,
            "space": self.space,
            "outputs": list(self.outputs),
            "timestamp": self.timestamp,
        }


@dataclass
class SessionProvenance:
    """
    Provenance of one (subject, timepoint, reference space) run.

    Parameters
    ----------
    subject, timepoint : str
        Session identifiers.
    target_space : str
        Reference space of the connectivity outputs.
    version : str
        structconn version that produced the outputs.

    Examples
    --------
    >>> provenance = SessionProvenance("sub-01", "tp1", "session", "0.1.0")
    >>> provenance.add_stage("aggregation", aggregator, {"min_length": 10.0}, "session")
    >>> provenance.write("sub-01_tp1_provenance.json")
    """

    subject: str
    timepoint: str
    target_space: str
    version: str
    stages: list[StageRecord] = field(default_factory=list)
    transformations: list[TransformationRecord] = field(default_factory=list)
    output_files: dict[str, str] = field(default_factory=dict)
    started: str = field(default_factory=_now)

    def add_stage(
        self, stage: str, step: object, parameters: dict[str, Any], space: str, outputs=()
    ) -> StageRecord:
        record = StageRecord.for_step(stage, step, parameters, space, outputs)
        self.stages.append(record)
        return record

    def add_transformation(self, record: TransformationRecord) -> None:
        self.transformations.append(record)

    def stage(self, name: str) -> StageRecord:
        """The record of stage ``name``."""
        for record in self.stages:
            if record.stage == name:
                return record
        raise KeyError(f"No stage '{name}' recorded")

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": PROVENANCE_FORMAT,
            "session": {
                "subject": self.subject,
                "timepoint": self.timepoint,
                "target_space": self.target_space,
            },
            "software": {"name": "structconn", "version": self.version},
            "started": self.started,
            "stages": [s.to_dict() for s in self.stages],
            "transformations": [t.to_dict() for t in self.transformations],
            "output_files": dict(self.output_files),
        }

    def write(self, path: str | Path) -> Path:
        """Validate and write the record as a JSON sidecar."""
        payload = self.to_dict()
        validate_provenance(payload)

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(payload, f, indent=2)
        return path

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionProvenance:
        validate_provenance(payload)
        session = payload["session"]
        return cls(
            subject=session["subject"],
            timepoint=session["timepoint"],
            target_space=session["target_space"],
            version=payload["software"]["version"],
            stages=[StageRecord(**s) for s in payload["stages"]],
            transformations=[TransformationRecord(**t) for t in payload["transformations"]],
            output_files=dict(payload.get("output_files", {})),
            started=payload["started"],
        )


_SESSION_FIELDS = ("subject", "timepoint", "target_space")
_STAGE_FIELDS = ("stage", "implementation", "parameters", "space", "outputs", "timestamp")
_TRANSFORM_FIELDS = ("source_space", "target_space", "data_kind", "transform_files")


def validate_provenance(payload: dict[str, Any]) -> None:
    """
    Check the structure of a session provenance payload.

    Every stage must carry its implementation, parameters and outputs,
    every transformation must lead into the session's reference space
    from another space, and timestamps must be ISO 8601.

    Raises
    ------
    ProvenanceError
        If the payload is malformed.
    """
    for key in ("session", "software", "started", "stages", "transformations"):
        if key not in payload:
            raise ProvenanceError(f"Provenance missing required field: {key}")

    session = payload["session"]
    for key in _SESSION_FIELDS:
        if key not in session:
            raise ProvenanceError(f"Provenance session missing required field: {key}")
    _check_timestamp(payload["started"])

    for stage in payload["stages"]:
        missing = [k for k in _STAGE_FIELDS if k not in stage]
        if missing:
            raise ProvenanceError(f"Stage record {stage.get('stage', '?')} missing {missing}")
        if not isinstance(stage["parameters"], dict):
            raise ProvenanceError(
                f"Parameters of stage '{stage['stage']}' must be dict, "
                f"got {type(stage['parameters'])}"
            )
        _check_timestamp(stage["timestamp"])

    for transform in payload["transformations"]:
        missing = [k for k in _TRANSFORM_FIELDS if k not in transform]
        if missing:
            raise ProvenanceError(f"Transformation record missing {missing}")
        if transform["target_space"] != session["target_space"]:
            raise ProvenanceError(
                f"Transformation into '{transform['target_space']}' recorded for a "
                f"'{session['target_space']}' session"
            )
        if transform["source_space"] == transform["target_space"]:
            raise ProvenanceError(
                f"Transformation from '{transform['source_space']}' to itself recorded"
            )


def _check_timestamp(value) -> None:
    try:
        datetime.fromisoformat(value)
    except (ValueError, TypeError) as e:
        raise ProvenanceError(f"Invalid timestamp format: {value}") from e


def load_provenance(path: str | Path) -> SessionProvenance:
    """Read and validate a provenance sidecar."""
    path = Path(path)
    try:
        with open(path) as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ProvenanceError(f"Could not read provenance '{path}': {e}") from e
    return SessionProvenance.from_dict(payload)
