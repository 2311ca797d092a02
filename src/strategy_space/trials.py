"""
Fan-out/fan-in execution of independent Monte Carlo trials.

Each trial is a call ``func(trial, seed)`` with ``seed = base_seed + trial``,
so results do not depend on scheduling order. ``func`` returns either a float
or a dict of floats (the main statistic under ``"value"``). A trial that raises
is recorded as failed and excluded from aggregation; it never aborts the batch.

Completed trials can be checkpointed as Parquet part files. On restart the
finished trial indices are read back with DuckDB and only the rest are run.
``func`` must be picklable when ``n_workers > 1`` (module-level function or an
instance of a module-level class).
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import duckdb
import numpy as np
import pandas as pd
from tqdm import tqdm

logger = logging.getLogger(__name__)


class TrialCheckpoint:
    """Append-only store of finished trial records under one directory."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _parts(self) -> List[Path]:
        return sorted(self.directory.glob("part-*.parquet"))

    def load(self) -> pd.DataFrame:
        parts = self._parts()
        if not parts:
            return pd.DataFrame(columns=["trial", "error"])
        con = duckdb.connect()
        try:
            df = con.execute(
                """
                SELECT *
                FROM read_parquet(?, union_by_name=true)
                ORDER BY trial
                """,
                [[p.as_posix() for p in parts]],
            ).fetchdf()
        finally:
            con.close()
        # a trial can appear twice if a run was killed between write and bookkeeping
        return df.drop_duplicates(subset="trial", keep="last").reset_index(drop=True)

    def completed_trials(self) -> set:
        return set(int(t) for t in self.load()["trial"])

    def append(self, records: List[Dict[str, Any]]) -> Optional[Path]:
        if not records:
            return None
        index = len(self._parts())
        path = self.directory / f"part-{index:05d}.parquet"
        while path.exists():
            index += 1
            path = self.directory / f"part-{index:05d}.parquet"
        pd.DataFrame.from_records(records).to_parquet(path, index=False)
        return path


@dataclass(frozen=True)
class TrialSet:
    """All trial records of one batch, indexed by trial."""

    records: pd.DataFrame
    name: str = ""

    @property
    def n_trials(self) -> int:
        return len(self.records)

    @property
    def failed(self) -> pd.DataFrame:
        return self.records[self.records["error"] != ""]

    @property
    def n_failed(self) -> int:
        return len(self.failed)

    def values(self, column: str = "value") -> np.ndarray:
        ok = self.records[self.records["error"] == ""]
        return ok[column].to_numpy(dtype=float)

    def column(self, column: str) -> pd.Series:
        return self.records.set_index("trial")[column]


def _normalise(trial: int, seed: int, result) -> Dict[str, Any]:
    record: Dict[str, Any] = {"trial": trial, "seed": seed, "error": ""}
    if isinstance(result, dict):
        record.update({k: float(v) for k, v in result.items()})
    else:
        record["value"] = float(result)
    if not math.isfinite(record.get("value", float("nan"))):
        record["error"] = "non-finite statistic"
    return record


def run_one_trial(func: Callable, trial: int, seed: int) -> Dict[str, Any]:
    """Run one trial, converting any exception into a failed-trial record."""
    try:
        return _normalise(trial, seed, func(trial, seed))
    except Exception as exc:  # per-trial isolation
        return {
            "trial": trial,
            "seed": seed,
            "value": float("nan"),
            "error": f"{type(exc).__name__}: {exc}",
        }


def run_trials(
    func: Callable,
    n_trials: int,
    base_seed: int,
    name: str = "trials",
    n_workers: int = 1,
    checkpoint: Optional[TrialCheckpoint] = None,
    checkpoint_every: int = 25,
    show_progress: bool = True,
) -> TrialSet:
    """
    Run trials ``0 .. n_trials-1`` and collect their records.

    Args:
        func: Callable ``(trial, seed) -> float | dict``.
        n_trials: Number of trials.
        base_seed: Trial ``i`` receives seed ``base_seed + i``.
        name: Label for progress bars and logs.
        n_workers: Process pool size; 1 runs in the calling process.
        checkpoint: Optional store of finished trials to resume from.
        checkpoint_every: Flush finished trials to the checkpoint after this many.
        show_progress: Show a tqdm progress bar.

    Returns:
        TrialSet with one record per trial (failed trials carry ``error``).
    """
    done = pd.DataFrame()
    todo: Iterable[int] = range(n_trials)
    if checkpoint is not None:
        done = checkpoint.load()
        done = done[done["trial"] < n_trials] if len(done) else done
        finished = set(int(t) for t in done["trial"]) if len(done) else set()
        todo = [t for t in range(n_trials) if t not in finished]
        if finished:
            logger.info("%s: resuming, %d/%d trials already checkpointed",
                        name, len(finished), n_trials)
    todo = list(todo)

    records: List[Dict[str, Any]] = []
    pending: List[Dict[str, Any]] = []

    def collect(record):
        records.append(record)
        if record["error"]:
            logger.debug("%s trial %d failed: %s", name, record["trial"], record["error"])
        if checkpoint is not None:
            pending.append(record)
            if len(pending) >= checkpoint_every:
                checkpoint.append(pending)
                pending.clear()

    progress = tqdm(total=len(todo), desc=name, disable=not show_progress)
    if n_workers <= 1 or len(todo) <= 1:
        for trial in todo:
            collect(run_one_trial(func, trial, base_seed + trial))
            progress.update(1)
    else:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = [
                executor.submit(run_one_trial, func, trial, base_seed + trial)
                for trial in todo
            ]
            for future in as_completed(futures):
                collect(future.result())
                progress.update(1)
    progress.close()

    if checkpoint is not None and pending:
        checkpoint.append(pending)

    frames = [pd.DataFrame.from_records(records)] if records else []
    if len(done):
        frames.insert(0, done)
    if frames:
        table = pd.concat(frames, ignore_index=True)
    else:
        table = pd.DataFrame(columns=["trial", "seed", "value", "error"])
    table["error"] = table["error"].fillna("").astype(str)
    table = table.sort_values("trial").reset_index(drop=True)

    trial_set = TrialSet(table, name=name)
    if trial_set.n_failed:
        logger.warning("%s: %d of %d trials failed and are excluded",
                       name, trial_set.n_failed, trial_set.n_trials)
    return trial_set
