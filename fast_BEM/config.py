from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Literal, Mapping

CompressionMethod = Literal["none", "low-rank-hierarchical", "multipole"]
CorrectionMethod = Literal["singularity-subtraction",
                           "density-interpolation",
                           "adaptive"]
UnmetPolicy = Literal["dense", "raise"]

COMPRESSION_METHODS = ("none", "low-rank-hierarchical", "multipole")
CORRECTION_METHODS = ("singularity-subtraction",
                      "density-interpolation",
                      "adaptive")


def _from_mapping(cls, options: Mapping[str, Any]):
    """Build an option dataclass from a plain mapping.

    Keys may use dashes or underscores; unknown keys raise ``TypeError`` so
    that misspelled options never pass silently.
    """
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in options.items():
        name = key.replace("-", "_")
        if name not in known:
            raise TypeError(f"Unknown {cls.__name__} option '{key}'.")
        kwargs[name] = value
    return cls(**kwargs)


def _check_workers(workers: int | None) -> None:
    if workers is not None and int(workers) < 1:
        raise ValueError("workers must be a positive integer or None.")


@dataclass(frozen=True)
class CompressionOptions:
    """Far-field compression policy.

    Args:
        method (str): ``"none"`` (one dense block, direct evaluation),
            ``"low-rank-hierarchical"`` (adaptive cross approximation on
            admissible cluster pairs) or ``"multipole"`` (truncated kernel
            expansion, requires ``kernel.expansion``).
        tolerance (float): Relative accuracy of every compressed block.
            Required; there is no default.
        leaf_size (int): Maximum number of points per leaf cluster.
        eta (float): Admissibility parameter: a cluster pair is compressed
            when ``max(r_T, r_S) <= eta * dist(T, S)``.
        max_rank (int): Rank budget of a low-rank block.
        max_order (int): Expansion order budget of a multipole block.
        on_unmet (str): What to do with a block that misses ``tolerance``
            within its budget: ``"dense"`` falls back to direct evaluation
            for that block, ``"raise"`` aborts the assembly.
        workers (int | None): Thread count for block construction and
            application. ``None`` runs serially.
    """

    method: CompressionMethod
    tolerance: float
    leaf_size: int = 32
    eta: float = 1.0
    max_rank: int = 64
    max_order: int = 40
    on_unmet: UnmetPolicy = "dense"
    workers: int | None = None

    def __post_init__(self) -> None:
        if self.method not in COMPRESSION_METHODS:
            raise ValueError(f"Unknown compression method '{self.method}'. "
                             f"Expected one of {COMPRESSION_METHODS}.")
        if self.tolerance is None or not float(self.tolerance) > 0.0:
            raise ValueError("Compression tolerance must be given explicitly "
                             "and be positive.")
        if int(self.leaf_size) < 1:
            raise ValueError("leaf_size must be at least 1.")
        if not float(self.eta) > 0.0:
            raise ValueError("eta must be positive.")
        if int(self.max_rank) < 1:
            raise ValueError("max_rank must be at least 1.")
        if int(self.max_order) < 1:
            raise ValueError("max_order must be at least 1.")
        if self.on_unmet not in ("dense", "raise"):
            raise ValueError("on_unmet must be 'dense' or 'raise'.")
        _check_workers(self.workers)

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> CompressionOptions:
        return _from_mapping(cls, options)


@dataclass(frozen=True)
class CorrectionOptions:
    """Singular and near-singular correction policy.

    Args:
        method (str): Treatment of near-singular (neighbouring) elements
            that are not close enough for the rules graded toward the
            target's projection: ``"singularity-subtraction"`` subdivides
            the element ``near_levels`` times, ``"density-interpolation"``
            interpolates the density onto a single rule with
            ``order * upsample`` nodes, ``"adaptive"`` subdivides from the
            element's own rule. Every rule is checked against the next
            refinement level; self interactions always use the
            regularizing transform with Richardson extrapolation.
        order (int): Number of base Gauss points of the regularized rules.
        tolerance (float): Convergence tolerance of the refinement
            sequence. Required.
        near_factor (float): Neighbourhood radius in units of the element
            diameter.
        max_levels (int): Maximum number of refinement levels, at least two,
            before :class:`~fast_BEM.exceptions.CorrectionDivergence` is
            raised.
        near_levels (int): Subdivision levels of
            ``"singularity-subtraction"``.
        upsample (int): Oversampling factor of ``"density-interpolation"``.
        grading (int): Exponent of the polynomial grading map used on curve
            panels.
        workers (int | None): Thread count; ``None`` runs serially.
    """

    method: CorrectionMethod
    order: int
    tolerance: float
    near_factor: float = 2.0
    max_levels: int = 6
    near_levels: int = 2
    upsample: int = 3
    grading: int = 3
    workers: int | None = None

    def __post_init__(self) -> None:
        if self.method not in CORRECTION_METHODS:
            raise ValueError(f"Unknown correction method '{self.method}'. "
                             f"Expected one of {CORRECTION_METHODS}.")
        if int(self.order) < 1:
            raise ValueError("Correction order must be at least 1.")
        if self.tolerance is None or not float(self.tolerance) > 0.0:
            raise ValueError("Correction tolerance must be given explicitly "
                             "and be positive.")
        if not float(self.near_factor) >= 0.0:
            raise ValueError("near_factor must be non-negative.")
        if int(self.max_levels) < 2:
            raise ValueError("max_levels must be at least 2.")
        if int(self.near_levels) < 0:
            raise ValueError("near_levels must be non-negative.")
        if int(self.upsample) < 1:
            raise ValueError("upsample must be at least 1.")
        if int(self.grading) < 1:
            raise ValueError("grading must be at least 1.")
        _check_workers(self.workers)

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> CorrectionOptions:
        return _from_mapping(cls, options)


def as_compression_options(options) -> CompressionOptions:
    """Accept a :class:`CompressionOptions` or a mapping."""
    if isinstance(options, CompressionOptions):
        return options
    if isinstance(options, Mapping):
        return CompressionOptions.from_dict(options)
    raise TypeError("compression must be CompressionOptions or a mapping, "
                    f"got {type(options).__name__}.")


def as_correction_options(options) -> CorrectionOptions:
    """Accept a :class:`CorrectionOptions` or a mapping."""
    if isinstance(options, CorrectionOptions):
        return options
    if isinstance(options, Mapping):
        return CorrectionOptions.from_dict(options)
    raise TypeError("correction must be CorrectionOptions or a mapping, "
                    f"got {type(options).__name__}.")
