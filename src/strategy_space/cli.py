#!/usr/bin/env python3
"""
Trait strategy-space analysis from the command line.

Commands:
  impute      Multiple imputation of the trait table (per taxonomic group)
  pca         Consensus PCA over an imputed ensemble
  density     Kernel density surface and probability contours on two axes
  null-test   Observed hypervolume vs. null-model volume distributions
  overlap     Pairwise group overlap vs. group-label permutations
  extinction  Risk-driven extinction scenarios vs. matched random removal
  run         Full pipeline from the input tables, every heavy stage cached

Examples:
  strategy-space run --traits_csv data/traits.csv --groups_csv data/groups.csv \\
      --predictors_csv data/phylo_eigenvectors.csv --risk_csv data/iucn.csv \\
      --out_dir results/ --config params.json --n_workers 8

  strategy-space null-test --scores_csv results/consensus_scores.csv \\
      --out_dir results/ --mode column_shuffle correlated_normal
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from .config import NULL_MODES, PipelineConfig, load_config, risk_probability_table
from .density import estimate_density
from .errors import InputTableError, StrategySpaceError
from .hypervolume import set_operations
from .pipeline import ObservedResult, Pipeline, results_frame, write_config
from .tables import align_species, load_table, save_table

logger = logging.getLogger(__name__)


def banner(title: str) -> None:
    print("=" * 80)
    print(title)
    print("=" * 80)


def step(i: int, n: int, title: str) -> None:
    print(f"\n[{i}/{n}] {title}")


# ----------------------------------------------------------------------
# Argument parsing
# ----------------------------------------------------------------------
def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="JSON parameter file")
    p.add_argument("--out_dir", required=True, help="Output directory")
    p.add_argument("--species_column", default=None, help="Species identifier column")
    p.add_argument("--seed", type=int, default=None, help="Seed for every stochastic stage")
    p.add_argument("--n_workers", type=int, default=None, help="Worker processes")
    p.add_argument("--cache_dir", default=None, help="Artifact cache directory")
    p.add_argument("--no_progress", action="store_true", help="Disable progress bars")


def _add_hypervolume(p: argparse.ArgumentParser) -> None:
    p.add_argument("--samples_per_point", type=int, default=None,
                   help="Random points per observation (default: ceil(10^(3+sqrt(d))/n))")
    p.add_argument("--n_trials", type=int, default=None, help="Trials per null/scenario")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strategy-space",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("impute", help="Multiple imputation of the trait table")
    p.add_argument("--traits_csv", required=True)
    p.add_argument("--groups_csv", required=True)
    p.add_argument("--predictors_csv", required=True)
    p.add_argument("--extinct_csv", default=None, help="Known-extinct species (dropped after imputation)")
    p.add_argument("--n_imputations", type=int, default=None)
    _add_common(p)

    p = sub.add_parser("pca", help="Consensus PCA over an imputed ensemble")
    p.add_argument("--ensemble_parquet", required=True)
    p.add_argument("--n_components", type=int, default=None)
    _add_common(p)

    p = sub.add_parser("density", help="Kernel density surface on two axes")
    p.add_argument("--scores_csv", required=True)
    p.add_argument("--x", default="PC1")
    p.add_argument("--y", default="PC2")
    p.add_argument("--bandwidth", choices=["plugin", "normal_scale"], default=None)
    _add_common(p)

    p = sub.add_parser("null-test", help="Observed hypervolume vs. null models")
    p.add_argument("--scores_csv", required=True)
    p.add_argument("--mode", nargs="+", choices=list(NULL_MODES), default=None)
    _add_hypervolume(p)
    _add_common(p)

    p = sub.add_parser("overlap", help="Group overlap vs. group-label permutations")
    p.add_argument("--scores_csv", required=True)
    p.add_argument("--groups_csv", required=True)
    _add_hypervolume(p)
    _add_common(p)

    p = sub.add_parser("extinction", help="Risk-driven extinction scenarios")
    p.add_argument("--scores_csv", required=True)
    p.add_argument("--risk_csv", required=True)
    p.add_argument("--raw_traits_csv", default=None, help="Raw-scale traits for --trait")
    p.add_argument("--trait", nargs="+", default=None, help="Trait mean statistics")
    _add_hypervolume(p)
    _add_common(p)

    p = sub.add_parser("run", help="Full pipeline")
    p.add_argument("--traits_csv", required=True)
    p.add_argument("--groups_csv", required=True)
    p.add_argument("--predictors_csv", required=True)
    p.add_argument("--risk_csv", default=None)
    p.add_argument("--extinct_csv", default=None)
    p.add_argument("--trait", nargs="+", default=None, help="Trait mean statistics for extinction")
    p.add_argument("--mode", nargs="+", choices=list(NULL_MODES), default=None)
    p.add_argument("--n_imputations", type=int, default=None)
    p.add_argument("--n_components", type=int, default=None)
    _add_hypervolume(p)
    _add_common(p)
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Nested config overrides for every flag that was given."""
    out: Dict[str, Dict[str, Any]] = {}

    def put(section: str, key: str, value):
        if value is not None:
            out.setdefault(section, {})[key] = value

    def get(name: str):
        return getattr(args, name, None)

    put("imputation", "n_imputations", get("n_imputations"))
    put("pca", "n_components", get("n_components"))
    put("density", "bandwidth", get("bandwidth"))
    put("hypervolume", "samples_per_point", get("samples_per_point"))
    put("null", "n_trials", get("n_trials"))
    put("null", "modes", get("mode"))
    put("extinction", "n_trials", get("n_trials"))
    put("runtime", "n_workers", get("n_workers"))
    put("runtime", "cache_dir", get("cache_dir"))
    if get("no_progress"):
        put("runtime", "show_progress", False)
    if get("seed") is not None:
        for section in ("imputation", "hypervolume", "null", "extinction"):
            put(section, "seed", args.seed)

    flat: Dict[str, Any] = dict(out)
    if get("species_column"):
        flat["species_column"] = args.species_column
    return flat


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _column(table: pd.DataFrame, column: str, path) -> pd.Series:
    if column not in table.columns:
        raise InputTableError(f"Column missing from {Path(path).name}", stage="load",
                              shape=table.shape, column=column)
    return table[column]


def _extinct_species(path, config: PipelineConfig) -> List[str]:
    if path is None:
        return []
    return list(load_table(path, config.species_column).index)


def _write_results(results: pd.DataFrame, out_dir: Path, name: str) -> Path:
    path = save_table(results, out_dir / name, index=False)
    for _, row in results.iterrows():
        print(f"  ✓ {row['test']}: observed={row['observed']:.4g}, SES={row['effect_size']:.2f}, "
              f"p={row['p_value']:.4f} ({row['alternative']})")
    return path


def _load_scores(path, config: PipelineConfig) -> pd.DataFrame:
    scores = load_table(path, config.species_column)
    return scores.select_dtypes("number").astype(float)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
def cmd_impute(args, config: PipelineConfig, out_dir: Path) -> int:
    pipeline = Pipeline(config)
    step(1, 3, "Loading tables")
    traits = pipeline.prepare(load_table(args.traits_csv, config.species_column))
    groups = _column(load_table(args.groups_csv, config.species_column), config.group_column,
                     args.groups_csv)
    predictors = load_table(args.predictors_csv, config.species_column)
    align_species(traits, groups, names=["groups table"])
    print(f"  ✓ {traits.shape[0]:,} species × {traits.shape[1]} traits, "
          f"{int(traits.isna().sum().sum()):,} absent cells")

    step(2, 3, f"Imputing (M={config.imputation.n_imputations})")
    ensemble = pipeline.impute(traits, predictors, groups, _extinct_species(args.extinct_csv, config))
    print(f"  ✓ {len(ensemble)} completed tables, {len(ensemble.species):,} species")

    step(3, 3, "Writing outputs")
    save_table(ensemble.to_long(), out_dir / "imputed_ensemble.parquet")
    save_table(ensemble.mean(), out_dir / "imputed_mean.csv")
    print(f"  ✓ {out_dir / 'imputed_ensemble.parquet'}")
    return 0


def cmd_pca(args, config: PipelineConfig, out_dir: Path) -> int:
    step(1, 2, "Consensus PCA")
    path = Path(args.ensemble_parquet)
    if not path.exists():
        raise InputTableError(f"Ensemble table not found: {path}", stage="load")
    long = pd.read_parquet(path)
    if "imputation" not in long.columns:
        raise InputTableError("Ensemble table needs an 'imputation' column", stage="load",
                              shape=long.shape, column="imputation")
    members = [frame.drop(columns="imputation") for _, frame in long.groupby("imputation", sort=True)]
    space = Pipeline(config).consensus(members)
    for pc, share in space.variance_explained.items():
        print(f"  {pc}: {share:.1%}")

    step(2, 2, "Writing outputs")
    save_table(space.scores, out_dir / "consensus_scores.csv")
    save_table(space.loadings, out_dir / "consensus_loadings.csv")
    save_table(space.variance_explained.to_frame(), out_dir / "variance_explained.csv")
    print(f"  ✓ {len(space.scores):,} species × {len(space.components)} components")
    return 0


def cmd_density(args, config: PipelineConfig, out_dir: Path) -> int:
    scores = _load_scores(args.scores_csv, config)
    for axis in (args.x, args.y):
        _column(scores, axis, args.scores_csv)
    step(1, 1, f"Density surface on {args.x} × {args.y}")
    dens = config.density
    surface = estimate_density(scores[[args.x, args.y]], dens.grid_size, dens.probabilities,
                               dens.bandwidth)
    save_table(surface.to_frame(), out_dir / "density_grid.parquet", index=False)
    payload = {
        "columns": list(surface.columns),
        "bandwidth": surface.bandwidth.tolist(),
        "levels": surface.levels_frame().to_dict(orient="records"),
    }
    with open(out_dir / "density_levels.json", "w") as f:
        json.dump(payload, f, indent=2)
    for p, t in sorted(surface.levels.items()):
        print(f"  ✓ {p:.0%} contour: density ≥ {t:.4g}")
    return 0


def cmd_null_test(args, config: PipelineConfig, out_dir: Path) -> int:
    pipeline = Pipeline(config)
    step(1, 2, "Observed hypervolume")
    observed = pipeline.observe(_load_scores(args.scores_csv, config))
    print(f"  ✓ Volume: {observed.volume:.4g} ({len(observed.space):,} species)")

    modes = args.mode or list(config.null.modes)
    step(2, 2, f"Null models ({', '.join(modes)}), N={config.null.n_trials}")
    tests = pipeline.volume_tests(observed, modes)
    for mode, (trials, _) in tests.items():
        save_table(trials.records, out_dir / f"null_volumes_{mode}.parquet", index=False)
        if trials.n_failed:
            print(f"  ⚠ {mode}: {trials.n_failed} failed trials excluded")
    save_table(observed.volumes_frame(), out_dir / "observed_volumes.csv", index=False)
    _write_results(results_frame([r for _, r in tests.values()]), out_dir,
                   "permutation_results.csv")
    return 0


def _write_overlap(observed: ObservedResult, pipeline: Pipeline, out_dir: Path) -> None:
    rows = []
    for first, second in observed.overlaps:
        stats = set_operations(observed.hypervolumes[first], observed.hypervolumes[second],
                               seed=pipeline.estimator.seed).overlap()
        rows.append({"first": first, "second": second, **stats})
    save_table(pd.DataFrame(rows), out_dir / "overlap_statistics.csv", index=False)

    tests = pipeline.overlap_tests(observed)
    for (first, second), (trials, _) in tests.items():
        save_table(trials.records, out_dir / f"label_permutation_{first}_{second}.parquet",
                   index=False)
    if tests:
        _write_results(results_frame([r for _, r in tests.values()]), out_dir, "overlap_tests.csv")


def cmd_overlap(args, config: PipelineConfig, out_dir: Path) -> int:
    pipeline = Pipeline(config)
    scores = _load_scores(args.scores_csv, config)
    groups = _column(load_table(args.groups_csv, config.species_column), config.group_column,
                     args.groups_csv)
    align_species(scores, groups, names=["groups table"])

    step(1, 2, "Observed group hypervolumes")
    observed = pipeline.observe(scores, groups)
    for name in observed.hypervolumes:
        print(f"  ✓ {name}: {observed.hypervolumes[name].volume:.4g} "
              f"({observed.n_species(name):,} species)")
    if len(observed.group_names) < 2:
        print("  ⚠ Fewer than two groups; nothing to compare")
        return 0

    step(2, 2, f"Group-label permutations, N={config.null.n_trials}")
    _write_overlap(observed, pipeline, out_dir)
    return 0


def _write_extinction(observed: ObservedResult, risk: pd.Series, traits: List[str],
                      pipeline: Pipeline, out_dir: Path) -> None:
    for c, p in risk_probability_table(pipeline.config.extinction):
        print(f"  {c}: p={p:g}")
    statistics = [None] + list(traits)
    results = []
    rank_rows = []
    for trait in statistics:
        result = pipeline.extinction(observed, risk, trait)
        save_table(result.distributions(), out_dir / f"extinction_{result.statistic}.parquet",
                   index=False)
        results.extend(pipeline.extinction_tests(result))
        rank = result.rank_test()
        rank_rows.append({"statistic": result.statistic, "U": rank.statistic,
                          "p_value": rank.p_value, "alternative": rank.alternative,
                          "n_scenario": rank.n_first, "n_matched": rank.n_second})
        print(f"  ✓ {result.statistic}: intact={result.intact:.4g}, "
              f"scenario mean={result.scenario.values().mean():.4g}, "
              f"matched mean={result.matched.values().mean():.4g}")
    _write_results(results_frame(results), out_dir, "extinction_tests.csv")
    save_table(pd.DataFrame(rank_rows), out_dir / "extinction_rank_tests.csv", index=False)


def cmd_extinction(args, config: PipelineConfig, out_dir: Path) -> int:
    pipeline = Pipeline(config)
    scores = _load_scores(args.scores_csv, config)
    risk = _column(load_table(args.risk_csv, config.species_column), config.risk_column,
                   args.risk_csv)
    raw = None
    if args.trait:
        if args.raw_traits_csv is None:
            raise InputTableError("--trait needs --raw_traits_csv", stage="extinction")
        raw = load_table(args.raw_traits_csv, config.species_column)
        align_species(scores, raw, names=["raw traits table"])

    step(1, 2, "Observed hypervolume")
    observed = pipeline.observe(scores, raw_traits=raw)
    print(f"  ✓ Volume: {observed.volume:.4g}")

    step(2, 2, f"Extinction scenarios, N={config.extinction.n_trials}")
    _write_extinction(observed, risk, args.trait or [], pipeline, out_dir)
    return 0


def cmd_run(args, config: PipelineConfig, out_dir: Path) -> int:
    pipeline = Pipeline(config)
    n = 6
    step(1, n, "Loading tables")
    traits = pipeline.prepare(load_table(args.traits_csv, config.species_column))
    groups = _column(load_table(args.groups_csv, config.species_column), config.group_column,
                     args.groups_csv)
    predictors = load_table(args.predictors_csv, config.species_column)
    align_species(traits, groups, names=["groups table"])
    print(f"  ✓ {traits.shape[0]:,} species × {traits.shape[1]} traits")

    step(2, n, f"Imputation (M={config.imputation.n_imputations})")
    ensemble = pipeline.impute(traits, predictors, groups, _extinct_species(args.extinct_csv, config))
    save_table(ensemble.to_long(), out_dir / "imputed_ensemble.parquet")
    raw = ensemble.mean()
    save_table(raw, out_dir / "imputed_mean.csv")

    step(3, n, "Consensus PCA")
    space = pipeline.consensus(ensemble)
    save_table(space.scores, out_dir / "consensus_scores.csv")
    save_table(space.loadings, out_dir / "consensus_loadings.csv")
    save_table(space.variance_explained.to_frame(), out_dir / "variance_explained.csv")
    if len(space.components) >= 2:
        dens = config.density
        surface = estimate_density(space.scores.iloc[:, :2], dens.grid_size, dens.probabilities,
                                   dens.bandwidth)
        save_table(surface.to_frame(), out_dir / "density_grid.parquet", index=False)
        save_table(surface.levels_frame(), out_dir / "density_levels.csv", index=False)
    print(f"  ✓ {', '.join(f'{k}={v:.1%}' for k, v in space.variance_explained.items())}")

    step(4, n, "Observed hypervolumes")
    observed = pipeline.observe(space.scores, groups, raw, space)
    save_table(observed.volumes_frame(), out_dir / "observed_volumes.csv", index=False)
    print(f"  ✓ All species: {observed.volume:.4g}")

    step(5, n, "Null models and group overlap")
    tests = pipeline.volume_tests(observed, args.mode)
    for mode, (trials, _) in tests.items():
        save_table(trials.records, out_dir / f"null_volumes_{mode}.parquet", index=False)
    _write_results(results_frame([r for _, r in tests.values()]), out_dir,
                   "permutation_results.csv")
    if len(observed.group_names) >= 2:
        _write_overlap(observed, pipeline, out_dir)

    step(6, n, "Extinction scenarios")
    if args.risk_csv is None:
        print("  ⚠ No --risk_csv given; skipped")
    else:
        risk = _column(load_table(args.risk_csv, config.species_column), config.risk_column,
                       args.risk_csv)
        _write_extinction(observed, risk, args.trait or [], pipeline, out_dir)
    return 0


COMMANDS = {
    "impute": cmd_impute,
    "pca": cmd_pca,
    "density": cmd_density,
    "null-test": cmd_null_test,
    "overlap": cmd_overlap,
    "extinction": cmd_extinction,
    "run": cmd_run,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    banner(f"STRATEGY SPACE: {args.command}")
    try:
        config = load_config(args.config, overrides_from_args(args))
        out_dir = Path(args.out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Resolved configuration written to %s", write_config(config, out_dir))
        status = COMMANDS[args.command](args, config, out_dir)
    except StrategySpaceError as exc:
        print(f"\n✗ ERROR: {exc}", file=sys.stderr)
        return 1

    print()
    banner(f"✓ {args.command} complete: outputs in {out_dir}")
    return status


if __name__ == "__main__":
    sys.exit(main())
