"""Trait strategy-space analysis: imputation, consensus PCA, density, hypervolumes and null models."""

from .config import PipelineConfig, load_config
from .ensemble_pca import ConsensusTraitSpace, ensemble_pca
from .errors import StrategySpaceError
from .hypervolume import Hypervolume, HypervolumeEstimator, set_operations
from .imputation import ImputedEnsemble, impute_ensemble
from .permutation import PermutationResult, permutation_test
from .pipeline import ObservedResult, Pipeline

__version__ = "0.1.0"
