"""
Pipeline configuration.

Every stochastic or tunable parameter lives here and is written back out next
to each artifact (config_resolved.json), so no run depends on a hidden default.

Config files are JSON with one object per section:

    {
      "imputation": {"n_imputations": 25, "n_iterations": 100, "seed": 20251022},
      "hypervolume": {"svm_nu": 0.01, "svm_gamma": 0.5},
      "null": {"n_trials": 999, "modes": ["column_shuffle"]},
      "runtime": {"n_workers": 8, "cache_dir": "cache"}
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError

# IUCN categories ordered from least to most threatened, with 100-year
# extinction probabilities (Mooers et al. 2008).
RISK_CATEGORIES: Tuple[str, ...] = ("LC", "NT", "VU", "EN", "CR")
RISK_PROBABILITIES: Dict[str, float] = {
    "LC": 0.0001,
    "NT": 0.01,
    "VU": 0.1,
    "EN": 0.667,
    "CR": 0.999,
}

NULL_MODES: Tuple[str, ...] = (
    "uniform",
    "normal",
    "column_shuffle",
    "correlated_normal",
)
ALTERNATIVES: Tuple[str, ...] = ("less", "greater", "two-sided")


@dataclass(frozen=True)
class ImputationConfig:
    n_imputations: int = 25
    n_iterations: int = 100
    n_donors: int = 5
    seed: int = 20251022
    ridge: float = 1e-5


@dataclass(frozen=True)
class PCAConfig:
    n_components: int = 5


@dataclass(frozen=True)
class DensityConfig:
    grid_size: int = 151
    probabilities: Tuple[float, ...] = (0.50, 0.95, 0.99)
    bandwidth: str = "plugin"


@dataclass(frozen=True)
class HypervolumeConfig:
    svm_nu: float = 0.01
    svm_gamma: float = 0.5
    # None -> ceil(10 ** (3 + sqrt(d)) / n)
    samples_per_point: Optional[int] = None
    range_padding: float = 0.5
    seed: int = 20251022


@dataclass(frozen=True)
class NullConfig:
    n_trials: int = 999
    modes: Tuple[str, ...] = NULL_MODES
    alternative: str = "less"
    overlap_statistic: str = "jaccard"
    seed: int = 20251022


@dataclass(frozen=True)
class ExtinctionConfig:
    categories: Tuple[str, ...] = RISK_CATEGORIES
    probabilities: Dict[str, float] = field(default_factory=lambda: dict(RISK_PROBABILITIES))
    default_category: str = "LC"
    # intact statistic against the scenario draws; "greater" detects a loss
    alternative: str = "greater"
    n_trials: int = 1000
    seed: int = 20251022


@dataclass(frozen=True)
class RuntimeConfig:
    n_workers: int = 1
    cache_dir: str = "cache"
    checkpoint_every: int = 25
    show_progress: bool = True


@dataclass(frozen=True)
class PipelineConfig:
    imputation: ImputationConfig = field(default_factory=ImputationConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    density: DensityConfig = field(default_factory=DensityConfig)
    hypervolume: HypervolumeConfig = field(default_factory=HypervolumeConfig)
    null: NullConfig = field(default_factory=NullConfig)
    extinction: ExtinctionConfig = field(default_factory=ExtinctionConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    species_column: str = "species_id"
    group_column: str = "group"
    risk_column: str = "risk_category"
    trait_columns: Tuple[str, ...] = ()
    log_traits: Tuple[str, ...] = ()
    predictor_prefix: str = "phylo_ev"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def save(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path


_SECTIONS = {
    "imputation": ImputationConfig,
    "pca": PCAConfig,
    "density": DensityConfig,
    "hypervolume": HypervolumeConfig,
    "null": NullConfig,
    "extinction": ExtinctionConfig,
    "runtime": RuntimeConfig,
}


def _build_section(cls, values: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown keys {unknown} in section '{section}'", stage="config")
    coerced = {}
    for key, value in values.items():
        # JSON has no tuples
        if isinstance(value, list):
            value = tuple(value)
        coerced[key] = value
    return cls(**coerced)


def config_from_dict(raw: Dict[str, Any], base: Optional[PipelineConfig] = None) -> PipelineConfig:
    """Merge a (possibly partial) mapping over ``base`` and validate the result."""
    base = base or PipelineConfig()
    top_level = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(raw) - top_level)
    if unknown:
        raise ConfigError(f"Unknown top-level keys {unknown}", stage="config")

    updates: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                raise ConfigError(f"Section '{key}' must be an object", stage="config")
            merged = {**asdict(getattr(base, key)), **value}
            updates[key] = _build_section(_SECTIONS[key], merged, key)
        elif isinstance(value, list):
            updates[key] = tuple(value)
        else:
            updates[key] = value

    config = replace(base, **updates)
    validate_config(config)
    return config


def load_config(path=None, overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """Load a JSON config file (optional) and apply nested ``overrides`` on top."""
    config = PipelineConfig()
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", stage="config")
        with open(path, "r") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid JSON in {path}: {exc}", stage="config") from exc
        config = config_from_dict(raw, config)
    if overrides:
        config = config_from_dict(overrides, config)
    else:
        validate_config(config)
    return config


def validate_config(config: PipelineConfig) -> None:
    def fail(message: str, column: Optional[str] = None):
        raise ConfigError(message, stage="config", column=column)

    imp = config.imputation
    if imp.n_imputations < 1:
        fail("n_imputations must be >= 1", "imputation.n_imputations")
    if imp.n_iterations < 1:
        fail("n_iterations must be >= 1", "imputation.n_iterations")
    if imp.n_donors < 1:
        fail("n_donors must be >= 1", "imputation.n_donors")

    if config.pca.n_components < 1:
        fail("n_components must be >= 1", "pca.n_components")

    dens = config.density
    if dens.bandwidth not in ("plugin", "normal_scale"):
        fail(f"Unknown bandwidth method '{dens.bandwidth}'", "density.bandwidth")
    if dens.grid_size < 10:
        fail("grid_size must be >= 10", "density.grid_size")
    if any(not 0.0 < p < 1.0 for p in dens.probabilities):
        fail("density probabilities must lie in (0, 1)", "density.probabilities")

    hv = config.hypervolume
    if not 0.0 < hv.svm_nu <= 1.0:
        fail("svm_nu must lie in (0, 1]", "hypervolume.svm_nu")
    if hv.svm_gamma <= 0:
        fail("svm_gamma must be > 0", "hypervolume.svm_gamma")
    if hv.samples_per_point is not None and hv.samples_per_point < 1:
        fail("samples_per_point must be >= 1", "hypervolume.samples_per_point")
    if hv.range_padding < 0:
        fail("range_padding must be >= 0", "hypervolume.range_padding")

    null = config.null
    if null.n_trials < 1:
        fail("n_trials must be >= 1", "null.n_trials")
    bad_modes = [m for m in null.modes if m not in NULL_MODES]
    if bad_modes:
        fail(f"Unknown null modes {bad_modes}", "null.modes")
    if null.alternative not in ALTERNATIVES:
        fail(f"Unknown alternative '{null.alternative}'", "null.alternative")
    if null.overlap_statistic not in ("jaccard", "sorensen"):
        fail(f"Unknown overlap statistic '{null.overlap_statistic}'", "null.overlap_statistic")

    ext = config.extinction
    if ext.n_trials < 1:
        fail("n_trials must be >= 1", "extinction.n_trials")
    missing = [c for c in ext.categories if c not in ext.probabilities]
    if missing:
        fail(f"No extinction probability for categories {missing}", "extinction.probabilities")
    extra = sorted(set(ext.probabilities) - set(ext.categories))
    if extra:
        fail(f"Probabilities given for unknown categories {extra}", "extinction.probabilities")
    probs = [ext.probabilities[c] for c in ext.categories]
    if any(not 0.0 <= p <= 1.0 for p in probs):
        fail("extinction probabilities must lie in [0, 1]", "extinction.probabilities")
    if any(b < a for a, b in zip(probs, probs[1:])):
        fail("extinction probabilities must not decrease along the category order",
             "extinction.probabilities")
    if ext.alternative not in ALTERNATIVES:
        fail(f"Unknown alternative '{ext.alternative}'", "extinction.alternative")
    if ext.default_category not in ext.categories:
        fail(f"default_category '{ext.default_category}' not in categories",
             "extinction.default_category")

    if config.runtime.n_workers < 1:
        fail("n_workers must be >= 1", "runtime.n_workers")
    if config.runtime.checkpoint_every < 1:
        fail("checkpoint_every must be >= 1", "runtime.checkpoint_every")


def section_dict(section) -> Dict[str, Any]:
    """Plain-dict view of one config section (used for cache keys)."""
    return asdict(section)


def risk_probability_table(config: ExtinctionConfig) -> List[Tuple[str, float]]:
    return [(c, float(config.probabilities[c])) for c in config.categories]
