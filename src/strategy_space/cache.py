"""
Content-addressed artifact cache.

Heavy stages (imputation, null volumes, extinction trials) are keyed by a
SHA-256 over (stage name, stage parameters incl. seed, input fingerprints).
Re-running a stage with identical inputs is a lookup. Layout:

    <root>/<stage>/<key>/manifest.json
    <root>/<stage>/<key>/<artifact>.parquet
    <root>/<stage>/<key>/<trials>/part-00000.parquet (trial checkpoints)
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import numpy as np
import pandas as pd

from .trials import TrialCheckpoint

logger = logging.getLogger(__name__)


def fingerprint(obj: Any) -> str:
    """Stable hex digest of a table, array or JSON-like value."""
    h = hashlib.sha256()
    if isinstance(obj, pd.DataFrame):
        h.update(json.dumps([str(c) for c in obj.columns]).encode())
        h.update(json.dumps([str(t) for t in obj.dtypes]).encode())
        h.update(pd.util.hash_pandas_object(obj, index=True).to_numpy().tobytes())
    elif isinstance(obj, pd.Series):
        h.update(str(obj.name).encode())
        h.update(pd.util.hash_pandas_object(obj, index=True).to_numpy().tobytes())
    elif isinstance(obj, np.ndarray):
        h.update(str(obj.shape).encode())
        h.update(str(obj.dtype).encode())
        h.update(np.ascontiguousarray(obj).tobytes())
    else:
        h.update(json.dumps(obj, sort_keys=True, default=str).encode())
    return h.hexdigest()


class ArtifactCache:
    def __init__(self, root):
        self.root = Path(root)

    def key(self, stage: str, params: Mapping[str, Any], inputs: Mapping[str, Any]) -> str:
        payload = {
            "stage": stage,
            "params": json.loads(json.dumps(params, sort_keys=True, default=str)),
            "inputs": {name: fingerprint(value) for name, value in sorted(inputs.items())},
        }
        return fingerprint(payload)

    def entry(self, stage: str, key: str) -> Path:
        return self.root / stage / key

    def has(self, stage: str, key: str) -> bool:
        return (self.entry(stage, key) / "manifest.json").exists()

    def load(self, stage: str, key: str) -> Dict[str, pd.DataFrame]:
        entry = self.entry(stage, key)
        with open(entry / "manifest.json", "r") as f:
            manifest = json.load(f)
        return {name: pd.read_parquet(entry / f"{name}.parquet") for name in manifest["artifacts"]}

    def save(self, stage: str, key: str, artifacts: Mapping[str, pd.DataFrame],
             params: Optional[Mapping[str, Any]] = None) -> Path:
        entry = self.entry(stage, key)
        tmp = entry.parent / f".{key}.tmp"
        if tmp.exists():
            shutil.rmtree(tmp)
        tmp.mkdir(parents=True)
        for name, frame in artifacts.items():
            frame.to_parquet(tmp / f"{name}.parquet", index=True)
        manifest = {
            "stage": stage,
            "key": key,
            "artifacts": sorted(artifacts),
            "params": json.loads(json.dumps(params or {}, default=str)),
            "created": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        }
        with open(tmp / "manifest.json", "w") as f:
            json.dump(manifest, f, indent=2)
        # keep any trial checkpoints written while computing
        if entry.exists():
            for child in entry.iterdir():
                target = tmp / child.name
                if not target.exists():
                    shutil.move(str(child), str(target))
            shutil.rmtree(entry)
        tmp.rename(entry)
        return entry

    def get_or_compute(
        self,
        stage: str,
        params: Mapping[str, Any],
        inputs: Mapping[str, Any],
        compute: Callable[[], Mapping[str, pd.DataFrame]],
    ) -> Dict[str, pd.DataFrame]:
        """Return cached artifacts for this key, computing and storing them on a miss."""
        key = self.key(stage, params, inputs)
        if self.has(stage, key):
            logger.info("%s: cache hit %s", stage, key[:12])
            return self.load(stage, key)
        logger.info("%s: cache miss %s, computing", stage, key[:12])
        artifacts = dict(compute())
        self.save(stage, key, artifacts, params)
        return artifacts

    def checkpoint(self, stage: str, params: Mapping[str, Any],
                   inputs: Mapping[str, Any], name: str = "trials") -> TrialCheckpoint:
        key = self.key(stage, params, inputs)
        return TrialCheckpoint(self.entry(stage, key) / name)
