import enum
import logging
import numpy as np

from scipy.sparse.linalg import LinearOperator

from fast_BEM.compression import FarFieldCompressor
from fast_BEM.config import (CompressionOptions,
                             CorrectionOptions,
                             as_compression_options,
                             as_correction_options)
from fast_BEM.kernels import Kernel
from fast_BEM.near_field import NearFieldCorrector
from fast_BEM.table import Quadrature

logger = logging.getLogger(__name__)


class OperatorState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ASSEMBLED = "assembled"
    MATERIALIZED = "materialized"


class BoundaryOperator:
    """
    Discretized boundary integral operator.

    The operator maps a density sampled at the source quadrature points to
    the layer potential at the target points,

        (A σ)_i = sum_j K(x_i, y_j) w_j σ_j,

    with singular and near-singular entries replaced by corrected element
    integrals and well-separated blocks compressed. For tensor kernels the
    components of a point are interleaved (component a of point i is entry
    i * d + a).

    Example:
        >>> table = build_quadrature(circle(1.0, 32), order=8)
        >>> D = BoundaryOperator.build(
        ...     LaplaceKernel(2, layer="double"), table,
        ...     compression={"method": "none", "tolerance": 1e-10},
        ...     correction={"method": "density-interpolation",
        ...                 "order": 8, "tolerance": 1e-10})
        >>> D.apply(np.ones(len(table)))  # ≈ -1/2
    """

    materialize_warn_size = 20000

    def __init__(self,
                 kernel: Kernel,
                 source: Quadrature,
                 target: Quadrature | None = None,
                 compression: CompressionOptions | dict | None = None,
                 correction: CorrectionOptions | dict | None = None,
                 verbose: bool = False):
        """
        Args:
            kernel (Kernel): Layer kernel.
            source (Quadrature): Source table (columns); must carry
                element geometry.
            target (Quadrature | None): Target table (rows); defaults to the
                source table.
            compression (CompressionOptions | dict): Far-field policy.
            correction (CorrectionOptions | dict): Near-field policy.
            verbose (bool): Show progress bars during assembly.
        """
        if compression is None or correction is None:
            raise ValueError("compression and correction options are "
                             "required.")
        self.kernel = kernel
        self.source = source
        self.target = source if target is None else target
        self.compression = as_compression_options(compression)
        self.correction = as_correction_options(correction)
        self.verbose = verbose

        self.state = OperatorState.UNINITIALIZED
        self.corrections = None
        self._compressor = None
        self._dense = None

    @classmethod
    def build(cls, kernel, source, target=None, compression=None,
              correction=None, verbose=False) -> "BoundaryOperator":
        """Construct and assemble in one step."""
        op = cls(kernel, source, target, compression, correction, verbose)
        return op.assemble()

    # -- descriptors ---------------------------------------------------------

    @property
    def shape(self) -> tuple[int, int]:
        m = self.kernel.value_shape[0] if self.kernel.value_shape else 1
        return self.target.num_points * m, self.source.num_points * m

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.kernel.dtype)

    @property
    def stats(self):
        self._require_assembled()
        return self._compressor.stats

    # -- assembly ------------------------------------------------------------

    def _validate(self) -> None:
        k, src, tgt = self.kernel, self.source, self.target
        if k.dim != src.dim or k.dim != tgt.dim:
            raise ValueError(f"Kernel dimension {k.dim} does not match the "
                             f"quadrature dimension ({src.dim}, {tgt.dim}).")
        if not src.has_geometry:
            raise ValueError("The source table must be built from element "
                             "geometry.")
        if k.needs_source_normals and src.normals is None:
            raise ValueError(f"The {k.layer} layer needs source normals.")
        if k.needs_target_normals and tgt.normals is None:
            raise ValueError(f"The {k.layer} layer needs target normals.")
        if self.compression.method == "multipole" and k.expansion is None:
            raise ValueError(f"Multipole compression is not available for "
                             f"{k!r}.")

    def assemble(self) -> "BoundaryOperator":
        """
        Compute the near-field corrections and the compressed blocks.

        Returns:
            BoundaryOperator: self, in the ASSEMBLED state.

        Raises:
            RuntimeError: If the operator is already assembled.
            CorrectionDivergence: If a singular integral does not converge.
            CompressionAccuracyUnmet: If a block misses the tolerance and
                ``on_unmet`` is ``"raise"``.
        """
        if self.state is not OperatorState.UNINITIALIZED:
            raise RuntimeError("Operator is already assembled.")
        self._validate()
        logger.info("Assembling %r: %d x %d (%s, %s).", self.kernel,
                    self.shape[0], self.shape[1], self.compression.method,
                    self.correction.method)

        corrector = NearFieldCorrector(self.source, self.target, self.kernel,
                                       self.correction, verbose=self.verbose)
        self.corrections = corrector.build()
        self._compressor = FarFieldCompressor(
            self.source, self.target, self.kernel, self.compression,
            self.corrections, near_factor=self.correction.near_factor,
            verbose=self.verbose).build()
        self.state = OperatorState.ASSEMBLED
        return self

    def _require_assembled(self) -> None:
        if self.state is OperatorState.UNINITIALIZED:
            raise RuntimeError("Operator is not assembled; call assemble().")

    # -- application ---------------------------------------------------------

    def apply(self, x: np.ndarray) -> np.ndarray:
        """
        Apply the operator.

        Args:
            x (np.ndarray): Density of shape (shape[1],) or a stack of
                densities of shape (shape[1], k).

        Returns:
            np.ndarray: Result of shape (shape[0],) or (shape[0], k).
        """
        self._require_assembled()
        x = np.asarray(x)
        if x.ndim not in (1, 2) or x.shape[0] != self.shape[1]:
            raise ValueError(f"Expected an input with {self.shape[1]} rows, "
                             f"got shape {x.shape}.")
        return self._compressor.apply(x)

    matvec = apply

    def __matmul__(self, x: np.ndarray) -> np.ndarray:
        return self.apply(x)

    def materialize(self) -> np.ndarray:
        """
        Dense matrix of the operator (cached, read-only).
        """
        self._require_assembled()
        if self._dense is None:
            if max(self.shape) > self.materialize_warn_size:
                logger.warning("Materializing a %d x %d operator (%.1f MB).",
                               self.shape[0], self.shape[1],
                               self.shape[0] * self.shape[1] *
                               self.dtype.itemsize / 1e6)
            dense = self._compressor.to_dense()
            dense.flags.writeable = False
            self._dense = dense
            self.state = OperatorState.MATERIALIZED
        return self._dense

    def diagonal(self) -> np.ndarray:
        """
        Diagonal of a square operator. Read from the self corrections when
        target and source share a table.
        """
        self._require_assembled()
        if self.shape[0] != self.shape[1]:
            raise ValueError("diagonal() needs a square operator.")
        if self._dense is not None:
            return np.diag(self._dense).copy()
        if self.target is not self.source:
            return np.diag(self.materialize()).copy()
        c = self.corrections
        on_diag = c.targets == c.sources
        vals = c.values[on_diag]
        idx = c.targets[on_diag]
        m = self.shape[0] // self.target.num_points
        diag = np.zeros(self.shape[0], dtype=self.dtype)
        if m == 1:
            diag[idx] = vals
        else:
            comps = np.arange(m)
            diag[(idx[:, None] * m + comps[None, :]).ravel()] = \
                vals[:, comps, comps].ravel()
        return diag

    def as_linear_operator(self, shift: complex = 0.0) -> LinearOperator:
        """
        scipy LinearOperator of ``shift * I + A`` (e.g. -1/2 I + D).
        """
        self._require_assembled()
        if shift != 0.0 and self.shape[0] != self.shape[1]:
            raise ValueError("A shift needs a square operator.")
        dtype = np.result_type(self.dtype, np.asarray(shift).dtype)

        def matvec(x):
            x = np.asarray(x).reshape(self.shape[1], -1)
            return shift * x + self.apply(x)

        return LinearOperator(self.shape, matvec=matvec, matmat=matvec,
                              dtype=dtype)

    def __repr__(self) -> str:
        return (f"BoundaryOperator({self.kernel!r}, shape={self.shape}, "
                f"state={self.state.value})")
