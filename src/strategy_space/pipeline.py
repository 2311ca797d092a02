"""
Stage orchestration.

The pipeline runs

    prepare -> impute -> consensus PCA -> observe -> null volumes
                                                  -> group overlap
                                                  -> extinction scenarios

``observe`` is the single construction point of the ObservedResult: the
standardized space, the observed hypervolumes and overlap statistics are
computed there once and passed by reference to every downstream test.
Imputation, null volumes, overlap nulls and extinction trials are wrapped in
the content-addressed cache, so re-running with identical inputs and
parameters is a lookup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .cache import ArtifactCache
from .config import PipelineConfig, section_dict
from .ensemble_pca import ConsensusTraitSpace, ensemble_pca, zscore
from .errors import InputTableError
from .extinction import (
    ExtinctionResult,
    TraitMeanStatistic,
    VolumeStatistic,
    simulate_extinctions,
)
from .hypervolume import Hypervolume, HypervolumeEstimator, overlap_statistic
from .imputation import ImputedEnsemble, impute_ensemble
from .null_models import null_overlaps, null_volumes
from .permutation import PermutationResult, permutation_test
from .tables import log_transform, predictor_columns, select_traits
from .trials import TrialSet

logger = logging.getLogger(__name__)

ALL_SPECIES = "all"


@dataclass(frozen=True)
class ObservedResult:
    """
    Everything computed once on the observed data.

    ``space`` is the standardized consensus space (every axis z-scored over
    all species) used for hypervolumes; ``raw_traits`` is the ensemble-mean
    trait table on its original (log) scale, kept separate for trait-level
    statistics.
    """

    space: pd.DataFrame
    hypervolumes: Dict[str, Hypervolume]
    overlaps: Dict[Tuple[str, str], float] = field(default_factory=dict)
    groups: Optional[pd.Series] = None
    raw_traits: Optional[pd.DataFrame] = None
    consensus: Optional[ConsensusTraitSpace] = None

    @property
    def volume(self) -> float:
        return self.hypervolumes[ALL_SPECIES].volume

    @property
    def group_names(self) -> List[str]:
        if self.groups is None:
            return []
        return sorted(self.groups.unique())

    def volumes_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"hypervolume": name, "n_species": self.n_species(name), "volume": hv.volume}
             for name, hv in self.hypervolumes.items()]
        )

    def n_species(self, name: str) -> int:
        if name == ALL_SPECIES:
            return len(self.space)
        return int((self.groups == name).sum())

    @classmethod
    def build(
        cls,
        scores: pd.DataFrame,
        estimator: HypervolumeEstimator,
        groups: Optional[pd.Series] = None,
        raw_traits: Optional[pd.DataFrame] = None,
        consensus: Optional[ConsensusTraitSpace] = None,
        statistic: str = "jaccard",
    ) -> "ObservedResult":
        space = zscore(scores)
        hypervolumes = {ALL_SPECIES: estimator.fit(space, name=ALL_SPECIES)}
        overlaps: Dict[Tuple[str, str], float] = {}
        if groups is not None:
            groups = groups.loc[space.index].astype(str)
            for name in sorted(groups.unique()):
                hypervolumes[name] = estimator.fit(space[groups == name], name=name)
            for first, second in combinations(sorted(groups.unique()), 2):
                overlaps[(first, second)] = overlap_statistic(
                    hypervolumes[first], hypervolumes[second], statistic, seed=estimator.seed
                )
        for name, hv in hypervolumes.items():
            logger.info("Observed hypervolume %s: %.4g", name, hv.volume)
        return cls(space, hypervolumes, overlaps, groups, raw_traits, consensus)


def results_frame(results: Sequence[PermutationResult]) -> pd.DataFrame:
    return pd.DataFrame([r.summary() for r in results])


class Pipeline:
    """Cached stage runner bound to one resolved configuration."""

    def __init__(self, config: PipelineConfig, cache: Optional[ArtifactCache] = None):
        self.config = config
        self.cache = cache or ArtifactCache(config.runtime.cache_dir)
        self.estimator = HypervolumeEstimator.from_config(config.hypervolume)

    @property
    def _trial_options(self) -> Dict[str, object]:
        runtime = self.config.runtime
        return dict(n_workers=runtime.n_workers, checkpoint_every=runtime.checkpoint_every,
                    show_progress=runtime.show_progress)

    # ------------------------------------------------------------------
    # Trait space
    # ------------------------------------------------------------------
    def prepare(self, traits: pd.DataFrame) -> pd.DataFrame:
        traits = select_traits(traits, self.config.trait_columns)
        if self.config.log_traits:
            traits = log_transform(traits, self.config.log_traits)
        return traits

    def impute(self, traits: pd.DataFrame, predictors: pd.DataFrame, groups: pd.Series,
               extinct: Sequence[str] = ()) -> ImputedEnsemble:
        predictors = predictors[predictor_columns(predictors, self.config.predictor_prefix)]
        groups = groups.astype(str)
        extinct = sorted(str(s) for s in extinct)

        def compute():
            ensemble = impute_ensemble(traits, predictors, groups, self.config.imputation,
                                       extinct=extinct, n_workers=self.config.runtime.n_workers)
            return {"ensemble": ensemble.to_long(), "missing_mask": ensemble.missing_mask}

        artifacts = self.cache.get_or_compute(
            "imputation",
            section_dict(self.config.imputation),
            {"traits": traits, "predictors": predictors, "groups": groups, "extinct": extinct},
            compute,
        )
        return ImputedEnsemble.from_long(artifacts["ensemble"], artifacts["missing_mask"])

    def consensus(self, ensemble) -> ConsensusTraitSpace:
        return ensemble_pca(ensemble, self.config.pca.n_components)

    def observe(self, scores: pd.DataFrame, groups: Optional[pd.Series] = None,
                raw_traits: Optional[pd.DataFrame] = None,
                consensus: Optional[ConsensusTraitSpace] = None) -> ObservedResult:
        return ObservedResult.build(scores, self.estimator, groups, raw_traits, consensus,
                                    statistic=self.config.null.overlap_statistic)

    # ------------------------------------------------------------------
    # Tests
    # ------------------------------------------------------------------
    def null_volumes(self, observed: ObservedResult, mode: str) -> TrialSet:
        null = self.config.null
        stage = f"null_{mode}"
        params = {"hypervolume": section_dict(self.config.hypervolume),
                  "n_trials": null.n_trials, "seed": null.seed, "mode": mode}
        inputs = {"space": observed.space}

        def compute():
            trials = null_volumes(
                observed.space, mode, self.estimator, null.n_trials, null.seed,
                checkpoint=self.cache.checkpoint(stage, params, inputs), **self._trial_options,
            )
            return {"trials": trials.records}

        records = self.cache.get_or_compute(stage, params, inputs, compute)["trials"]
        return TrialSet(records, name=f"null volumes ({mode})")

    def volume_tests(self, observed: ObservedResult,
                     modes: Optional[Sequence[str]] = None) -> Dict[str, Tuple[TrialSet, PermutationResult]]:
        """Observed volume of all species against each null model's volume distribution."""
        out = {}
        for mode in modes or self.config.null.modes:
            trials = self.null_volumes(observed, mode)
            result = permutation_test(observed.volume, trials.values(),
                                      self.config.null.alternative, label=f"volume vs {mode}")
            out[mode] = (trials, result)
        return out

    def overlap_tests(self, observed: ObservedResult) -> Dict[Tuple[str, str], Tuple[TrialSet, PermutationResult]]:
        """Observed pairwise group overlap against group-label permutations."""
        if observed.groups is None:
            return {}
        null = self.config.null
        out = {}
        for (first, second), value in observed.overlaps.items():
            stage = "overlap"
            params = {"hypervolume": section_dict(self.config.hypervolume),
                      "n_trials": null.n_trials, "seed": null.seed,
                      "statistic": null.overlap_statistic, "pair": [first, second]}
            inputs = {"space": observed.space, "groups": observed.groups}

            def compute():
                trials = null_overlaps(
                    observed.space, observed.groups, first, second, self.estimator,
                    null.n_trials, null.seed, statistic=null.overlap_statistic,
                    checkpoint=self.cache.checkpoint(stage, params, inputs), **self._trial_options,
                )
                return {"trials": trials.records}

            records = self.cache.get_or_compute(stage, params, inputs, compute)["trials"]
            trials = TrialSet(records, name=f"label permutation ({first} vs {second})")
            result = permutation_test(value, trials.values(), null.alternative,
                                      label=f"{null.overlap_statistic} {first} vs {second}")
            out[(first, second)] = (trials, result)
        return out

    def extinction(self, observed: ObservedResult, risk: pd.Series,
                   trait: Optional[str] = None) -> ExtinctionResult:
        """
        Extinction scenarios on the observed species.

        With ``trait`` the statistic is that trait's raw-scale mean, otherwise
        the hypervolume of the survivors in standardized space.
        """
        ext = self.config.extinction
        if trait is None:
            statistic = VolumeStatistic(observed.space, self.estimator)
            inputs = {"space": observed.space}
        else:
            if observed.raw_traits is None:
                raise InputTableError("Trait statistics need raw trait values",
                                      stage="extinction", column=trait)
            statistic = TraitMeanStatistic(observed.raw_traits.loc[observed.space.index], trait)
            inputs = {"values": statistic.values}
        inputs["risk"] = risk.reindex(observed.space.index)
        stage = f"extinction_{statistic.name}"
        params = {"extinction": section_dict(ext),
                  "hypervolume": section_dict(self.config.hypervolume) if trait is None else None}

        def compute():
            result = simulate_extinctions(
                statistic, risk, ext,
                checkpoints={kind: self.cache.checkpoint(stage, params, inputs, name=kind)
                             for kind in ("scenario", "matched")},
                **self._trial_options,
            )
            return {"distributions": result.distributions(),
                    "intact": pd.DataFrame({"intact": [result.intact]})}

        artifacts = self.cache.get_or_compute(stage, params, inputs, compute)
        dist = artifacts["distributions"]
        split = {kind: dist[dist["distribution"] == kind].drop(columns="distribution")
                 .reset_index(drop=True) for kind in ("scenario", "matched")}
        return ExtinctionResult(
            statistic.name,
            float(artifacts["intact"]["intact"].iloc[0]),
            TrialSet(split["scenario"], name=f"extinction {statistic.name}"),
            TrialSet(split["matched"], name=f"matched null {statistic.name}"),
        )

    def extinction_tests(self, result: ExtinctionResult) -> List[PermutationResult]:
        return [result.versus_intact(self.config.extinction.alternative),
                result.versus_matched("two-sided")]


def write_config(config: PipelineConfig, out_dir) -> Path:
    return config.save(Path(out_dir) / "config_resolved.json")
