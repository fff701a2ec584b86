from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal

from pghap.data_processing.config import apply_dot_overrides


@dataclass
class IOConfig:
    """I/O configuration.

    Attributes:
        prefix (str): Prefix for output files and directories. Default is "pghap".
        verbose (bool): If True, enables INFO logging. Default is False.
        debug (bool): If True, enables DEBUG logging. Default is False.
        seed (int | None): Random seed for accuracy masking. Default is None.
        n_jobs (int): Number of worker processes. ``1`` runs in-process, ``-1`` uses every core. Default is 1.
        timeout_hours (float): Wall-clock limit for the whole worker pool. Samples still running when it expires are emitted unresolved. Default is 48.
    """

    prefix: str = "pghap"
    verbose: bool = False
    debug: bool = False
    seed: int | None = None
    n_jobs: int = 1
    timeout_hours: float = 48.0


@dataclass
class SearchConfig:
    """Donor search thresholds and cascade switches.

    Attributes:
        min_minor_count (int): Minor-allele bit count a search window must reach before it stops widening (``minMinorCountPerWindow``).
        min_major_ratio (int): The window also stops widening once the major-allele bit count reaches ``min_major_ratio * min_minor_count``.
        min_test_sites (int): Minimum number of tested sites for a hypothesis to be kept, and minimum called sites for a taxon to be imputed at all.
        max_donor_hypotheses (int): Maximum number of ranked hypotheses per window (K).
        maximum_inbred_error (float): Error-rate threshold for accepting a single-donor (inbred) hypothesis.
        max_hybrid_error_rate (float): Error-rate threshold for accepting a two-donor hypothesis for the whole segment or in smash mode.
        max_error_rate_for_focus_viterbi (float): Threshold on the phased error rate of a per-block Viterbi solution. Looser than the inbred threshold because fewer sites are compared.
        het_threshold (float): Taxa whose heterozygous proportion is at least this value are treated as heterozygous-like and keep het smash estimates.
        enable_inbred_search (bool): Run the per-block single-donor stage.
        enable_hybrid_search (bool): Run the whole-segment and per-block Viterbi stages.
        smash_mode (bool): Run the per-block hybrid "smash" fallback without phasing.

    Notes:
        - Window and hypothesis block indices are in 64-site units.
    """

    min_minor_count: int = 20
    min_major_ratio: int = 10
    min_test_sites: int = 20
    max_donor_hypotheses: int = 20
    maximum_inbred_error: float = 0.01
    max_hybrid_error_rate: float = 0.003
    max_error_rate_for_focus_viterbi: float = 0.02
    het_threshold: float = 0.01
    enable_inbred_search: bool = True
    enable_hybrid_search: bool = True
    smash_mode: bool = True


@dataclass
class HMMConfig:
    """Phase-resolution HMM settings.

    Attributes:
        bidirectional_viterbi (bool): Decode forward and reverse and reconcile the two paths.
        min_informative_sites (int): Minimum informative sites required to decode a donor pair.
        non_mendelian_factor (float): A pair is rejected when its non-Mendelian rate exceeds ``non_mendelian_factor * search.maximum_inbred_error``.
        prob_heterozygous (float): Prior probability of the heterozygous states.
    """

    bidirectional_viterbi: bool = True
    min_informative_sites: int = 10
    non_mendelian_factor: float = 5.0
    prob_heterozygous: float = 0.5


@dataclass
class MergeConfig:
    """How donor estimates are written into the output buffer.

    Attributes:
        resolve_het_if_undercalled (bool): Upgrade an observed homozygous call to heterozygous when the (non-smash) donor estimate is heterozygous.
        record_breakpoints (bool): Record donor-interval breakpoints while merging.
    """

    resolve_het_if_undercalled: bool = False
    record_breakpoints: bool = True


@dataclass
class DonorConfig:
    """Donor panel preparation.

    Attributes:
        approx_sites_per_panel (int): When a single donor matrix is chunked, the approximate number of sites per panel.
        chunk (bool): Chunk a single large donor matrix into panels.
        swap_major_minor (bool): Flip target major/minor bits at sites where the donor panel's alleles are swapped.
        impute_donor_file (bool): The target taxa are also present as donors; a donor named like the target is excluded from its own search.
    """

    approx_sites_per_panel: int = 8000
    chunk: bool = False
    swap_major_minor: bool = True
    impute_donor_file: bool = False


@dataclass
class AccuracyConfig:
    """Masked-call accuracy evaluation.

    Attributes:
        enabled (bool): Mask known calls before imputation and score them afterwards.
        prop_sites_mask (float): Proportion of known target calls to mask.
        strategy (Literal["random", "random_inv_genotype"]): Masking strategy.
    """

    enabled: bool = False
    prop_sites_mask: float = 0.01
    strategy: Literal["random", "random_inv_genotype"] = "random"


@dataclass
class OutputConfig:
    """Output artifacts.

    Attributes:
        projection (bool): Write donor intervals per sample alongside genotypes.
        write_summary (bool): Write the per-sample summary table.
        plot (bool): Write summary plots.
    """

    projection: bool = False
    write_summary: bool = True
    plot: bool = False


@dataclass
class PlotConfig:
    """Plotting configuration.

    Attributes:
        fmt (Literal["pdf", "png", "jpg", "jpeg", "svg"]): Output file format.
        dpi (int): Dots per inch for the output figure.
        fontsize (int): Font size for text in the plots.
        despine (bool): If True, removes the top and right spines from plots.
        show (bool): If True, displays the plot interactively.
    """

    fmt: Literal["pdf", "png", "jpg", "jpeg", "svg"] = "pdf"
    dpi: int = 300
    fontsize: int = 18
    despine: bool = True
    show: bool = False


@dataclass
class ImputeConfig:
    """Top-level configuration for ImputeDonorHMM.

    Attributes:
        io (IOConfig): I/O, logging and parallelism.
        search (SearchConfig): Donor search thresholds and cascade switches.
        hmm (HMMConfig): Phase-resolution settings.
        merge (MergeConfig): Merge rule switches.
        donors (DonorConfig): Donor panel preparation.
        accuracy (AccuracyConfig): Masked-call accuracy evaluation.
        output (OutputConfig): Output artifacts.
        plot (PlotConfig): Plot styling.
    """

    io: IOConfig = field(default_factory=IOConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    hmm: HMMConfig = field(default_factory=HMMConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    donors: DonorConfig = field(default_factory=DonorConfig)
    accuracy: AccuracyConfig = field(default_factory=AccuracyConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    plot: PlotConfig = field(default_factory=PlotConfig)

    @classmethod
    def from_preset(
        cls, preset: Literal["fast", "balanced", "thorough"] = "balanced"
    ) -> "ImputeConfig":
        """Construct a preset configuration.

        "fast" keeps fewer hypotheses and smaller windows and decodes in one direction only; "thorough" keeps more hypotheses and larger windows. "balanced" is the dataclass defaults.

        Args:
            preset (Literal["fast", "balanced", "thorough"]): Preset name.

        Returns:
            ImputeConfig: Populated config instance.

        Raises:
            ValueError: If `preset` is unknown.
        """
        if preset not in {"fast", "balanced", "thorough"}:
            raise ValueError(f"Unknown preset: {preset}")

        cfg = cls()
        if preset == "fast":
            cfg.search.max_donor_hypotheses = 10
            cfg.search.min_minor_count = 10
            cfg.hmm.bidirectional_viterbi = False
        elif preset == "thorough":
            cfg.search.max_donor_hypotheses = 40
            cfg.search.min_minor_count = 30
            cfg.output.projection = True
        return cfg

    def apply_overrides(self, overrides: Dict[str, Any] | None) -> "ImputeConfig":
        """Return a copy with dot-key overrides applied (e.g. {'search.smash_mode': False}).

        Raises:
            KeyError: If an override names an unknown field.
        """
        return apply_dot_overrides(self, overrides) if overrides else self

    def to_dict(self) -> Dict[str, Any]:
        """Return the config as a nested dictionary."""
        return asdict(self)
