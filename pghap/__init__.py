## PG-HAP package: donor-haplotype genotype imputation

from ._version import version as __version__

from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.donors import DonorPanel, load_donor_panels
from pghap.data_processing.genotypes import GenotypeMatrix
from pghap.impute.hypotheses import DonorHypothesis
from pghap.impute.orchestrator import ImputeDonorHMM
from pghap.impute.phasing import ViterbiPhaseResolver
from pghap.impute.worker import TaxonImputationWorker, TaxonResult

__all__ = [
    "ImputeDonorHMM",  # Imputer
    "TaxonImputationWorker",  # Per-sample engine
    "ViterbiPhaseResolver",
    "DonorHypothesis",
    "TaxonResult",
    "GenotypeMatrix",  # Data containers
    "DonorPanel",
    "load_donor_panels",
    "ImputeConfig",  # Config
    "__version__",
]
