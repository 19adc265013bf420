import logging
import threading
import warnings
import numpy as np

from dataclasses import dataclass

from fast_BEM.config import CompressionOptions
from fast_BEM.exceptions import (CompressionAccuracyUnmet,
                                 CompressionAccuracyWarning,
                                 SingularEvaluation)
from fast_BEM.kernels import Kernel
from fast_BEM.near_field import CorrectionSet
from fast_BEM.table import Quadrature
from fast_BEM.tree import ClusterTree, block_partition
from fast_BEM.utils import external_stacklevel, parallel_map

logger = logging.getLogger(__name__)

# Number of rows (and columns) sampled by the a-posteriori block checks.
_SAMPLE_ROWS = 8
# ACA stops once the last cross is below this fraction of the tolerance.
_ACA_RTOL = 0.1


# ============================================================================
# Blocks
# ============================================================================

class DenseBlock:
    """Explicit matrix block; rows and cols are slices in tree ordering."""
    kind = "dense"

    def __init__(self, rows: slice, cols: slice, matrix: np.ndarray):
        self.rows = rows
        self.cols = cols
        self.matrix = matrix

    def matvec(self, x: np.ndarray) -> np.ndarray:
        return self.matrix @ x

    def to_dense(self) -> np.ndarray:
        return self.matrix

    @property
    def rank(self) -> int:
        return min(self.matrix.shape)

    @property
    def nbytes(self) -> int:
        return self.matrix.nbytes


class LowRankBlock:
    """Block stored as U @ V with U (m, r) and V (r, n)."""
    kind = "low-rank"

    def __init__(self, rows: slice, cols: slice, U: np.ndarray, V: np.ndarray):
        self.rows = rows
        self.cols = cols
        self.U = U
        self.V = V

    def matvec(self, x: np.ndarray) -> np.ndarray:
        return self.U @ (self.V @ x)

    def to_dense(self) -> np.ndarray:
        return self.U @ self.V

    @property
    def rank(self) -> int:
        return self.U.shape[1]

    @property
    def nbytes(self) -> int:
        return self.U.nbytes + self.V.nbytes


class MultipoleBlock:
    """
    Block stored as U @ V where the moment matrix V belongs to the source
    cluster and is shared with every block of the same (cluster, order).
    """
    kind = "multipole"

    def __init__(self,
                 rows: slice,
                 cols: slice,
                 U: np.ndarray,
                 V: np.ndarray,
                 source_node: int,
                 order: int):
        self.rows = rows
        self.cols = cols
        self.U = U
        self.V = V
        self.source_node = source_node
        self.order = order

    @property
    def key(self) -> tuple[int, int]:
        return self.source_node, self.order

    def evaluate(self, moments: np.ndarray) -> np.ndarray:
        """Block product from precomputed moments V @ x."""
        return self.U @ moments

    def matvec(self, x: np.ndarray) -> np.ndarray:
        return self.U @ (self.V @ x)

    def to_dense(self) -> np.ndarray:
        return self.U @ self.V

    @property
    def rank(self) -> int:
        return self.U.shape[1]

    @property
    def nbytes(self) -> int:
        # Moments are shared and counted once by the compressor.
        return self.U.nbytes


# ============================================================================
# Adaptive cross approximation
# ============================================================================

def aca(get_row,
        get_col,
        shape: tuple[int, int],
        tolerance: float,
        max_rank: int,
        dtype=np.float64) -> tuple[np.ndarray, np.ndarray, bool, float]:
    """
    Adaptive cross approximation with partial pivoting.

    Starts at row 0; the next row pivot is the largest entry of the last
    column cross among unused rows. Stops once the new cross is small
    relative to the running Frobenius norm of the approximation.

    Args:
        get_row (Callable): i -> row i of the block, shape (n,).
        get_col (Callable): j -> column j of the block, shape (m,).
        shape (tuple[int, int]): Block shape (m, n).
        tolerance (float): Relative stopping tolerance.
        max_rank (int): Rank budget.
        dtype: Dtype of the factors.

    Returns:
        U (np.ndarray): Array of shape (m, r).
        V (np.ndarray): Array of shape (r, n).
        converged (bool): Whether the tolerance was reached.
        error (float): Last relative cross size.
    """
    m, n = shape
    us, vs = [], []
    used = np.zeros(m, dtype=bool)
    norm2 = 0.0
    i = 0
    error = np.inf

    while len(us) < max_rank:
        row = np.asarray(get_row(i), dtype=dtype).copy()
        for u, v in zip(us, vs):
            row -= u[i] * v
        used[i] = True
        j = int(np.argmax(np.abs(row)))
        if row[j] == 0.0:
            free = np.nonzero(~used)[0]
            if len(free) == 0:
                return _stack(us, vs, m, n, dtype) + (True, 0.0)
            i = int(free[0])
            continue

        v_new = row / row[j]
        u_new = np.asarray(get_col(j), dtype=dtype).copy()
        for u, v in zip(us, vs):
            u_new -= v[j] * u

        cross = np.linalg.norm(u_new) * np.linalg.norm(v_new)
        mixed = sum(np.vdot(u, u_new) * np.vdot(v, v_new)
                    for u, v in zip(us, vs))
        norm2 = norm2 + cross**2 + 2.0 * float(np.real(mixed))
        us.append(u_new)
        vs.append(v_new)

        error = cross / np.sqrt(max(norm2, np.finfo(float).tiny))
        if error <= tolerance or len(us) == min(m, n):
            return _stack(us, vs, m, n, dtype) + (True, error)

        candidates = np.where(used, -1.0, np.abs(u_new))
        i = int(np.argmax(candidates))
        if used[i]:
            return _stack(us, vs, m, n, dtype) + (True, error)

    return _stack(us, vs, m, n, dtype) + (False, error)


def _stack(us, vs, m, n, dtype):
    if not us:
        return np.zeros((m, 0), dtype=dtype), np.zeros((0, n), dtype=dtype)
    return np.column_stack(us), np.vstack(vs)


def recompress(U: np.ndarray,
               V: np.ndarray,
               tolerance: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Truncate U @ V to the smallest rank that keeps the discarded singular
    values below ``0.1 * tolerance`` of the block norm.
    """
    if U.shape[1] == 0:
        return U, V
    Qu, Ru = np.linalg.qr(U)
    Qv, Rv = np.linalg.qr(V.T)
    W, sigma, Zh = np.linalg.svd(Ru @ Rv.T)
    total = np.linalg.norm(sigma)
    if total == 0.0:
        return U[:, :0], V[:0]
    tail = np.sqrt(np.cumsum(sigma[::-1]**2))[::-1]
    keep = int(np.sum(tail > 0.1 * tolerance * total))
    keep = max(keep, 1)
    U_new = Qu @ (W[:, :keep] * sigma[None, :keep])
    V_new = Zh[:keep] @ Qv.T
    return U_new, V_new


# ============================================================================
# Compressor
# ============================================================================

@dataclass(frozen=True)
class CompressionStats:
    """
    Summary of a compressed operator.

    ``compression_ratio`` is the size of the dense matrix divided by the
    stored size, so values above one mean savings.
    """
    num_blocks: int
    num_dense: int
    num_low_rank: int
    num_multipole: int
    num_fallbacks: int
    max_rank: int
    nbytes: int
    dense_nbytes: int

    @property
    def compression_ratio(self) -> float:
        return self.dense_nbytes / max(self.nbytes, 1)


def _dof_perm(perm: np.ndarray, m: int) -> np.ndarray:
    return (perm[:, None] * m + np.arange(m)[None, :]).ravel()


def _sample(size: int) -> np.ndarray:
    """Evenly spread sample of at most _SAMPLE_ROWS indices."""
    return np.unique(np.linspace(0, size - 1,
                                 min(_SAMPLE_ROWS, size)).astype(int))


def _relative_error(exact: np.ndarray, approx: np.ndarray) -> float:
    return float(np.linalg.norm(exact - approx) /
                 max(np.linalg.norm(exact), np.finfo(float).tiny))


class FarFieldCompressor:
    """
    Block representation of the corrected Nyström matrix.

    The index space is split by two cluster trees into admissible blocks,
    compressed with the configured method, and inadmissible leaf blocks,
    evaluated directly with the near-field corrections substituted. All
    blocks live in tree ordering; :meth:`apply` permutes in and out.
    """

    def __init__(self,
                 source: Quadrature,
                 target: Quadrature,
                 kernel: Kernel,
                 options: CompressionOptions,
                 corrections: CorrectionSet,
                 near_factor: float = 0.0,
                 verbose: bool = False):
        self.source = source
        self.target = target
        self.kernel = kernel
        self.options = options
        self.corrections = corrections
        self.near_factor = float(near_factor)
        self.verbose = verbose

        self.m, self.n = corrections.block_size
        self.shape = (target.num_points * self.m, source.num_points * self.n)
        self.dtype = np.dtype(kernel.dtype)
        self.expansion = kernel.expansion \
            if options.method == "multipole" else None
        if options.method == "multipole" and self.expansion is None:
            raise ValueError(f"{kernel!r} has no multipole expansion.")

        self.blocks = []
        self.fallbacks = []
        self._moments = {}
        self._lock = threading.Lock()
        self.target_tree = None
        self.source_tree = None

    # -- entries -------------------------------------------------------------

    def _kernel_block(self, ti: np.ndarray, sj: np.ndarray) -> np.ndarray:
        """Weighted kernel K(x_i, y_j) w_j in DOF layout."""
        tgt, src = self.target, self.source
        n_x = None if tgt.normals is None else tgt.normals[ti]
        n_y = None if src.normals is None else src.normals[sj]
        try:
            K = self.kernel.block(tgt.points[ti], src.points[sj], n_x, n_y)
        except SingularEvaluation as err:
            K = self.kernel.block(tgt.points[ti], src.points[sj], n_x, n_y,
                                  exclude=err.pairs)
        w = src.weights[sj].reshape((1, -1) +
                                    (1,) * len(self.kernel.value_shape))
        return K * w

    def _to_dof(self, K: np.ndarray) -> np.ndarray:
        if self.kernel.value_shape == ():
            return K
        nt, ns = K.shape[:2]
        return K.transpose(0, 2, 1, 3).reshape(nt * self.m, ns * self.n)

    def _index_corrections(self, tinv: np.ndarray, sinv: np.ndarray):
        tpos = tinv[self.corrections.targets]
        spos = sinv[self.corrections.sources]
        order = np.argsort(tpos, kind="stable")
        self._c_tpos = tpos[order]
        self._c_spos = spos[order]
        self._c_vals = self.corrections.values[order]

    def _dense(self,
               t_range: tuple[int, int],
               s_range: tuple[int, int],
               ti: np.ndarray,
               sj: np.ndarray) -> DenseBlock:
        K = self._kernel_block(ti, sj).astype(self.dtype, copy=False)
        lo, hi = np.searchsorted(self._c_tpos, t_range)
        tp = self._c_tpos[lo:hi]
        sp = self._c_spos[lo:hi]
        inside = (sp >= s_range[0]) & (sp < s_range[1])
        if np.any(inside):
            K[tp[inside] - t_range[0], sp[inside] - s_range[0]] = \
                self._c_vals[lo:hi][inside]
        rows = slice(t_range[0] * self.m, t_range[1] * self.m)
        cols = slice(s_range[0] * self.n, s_range[1] * self.n)
        return DenseBlock(rows, cols, self._to_dof(K))

    # -- compressed blocks ---------------------------------------------------

    def _low_rank(self, t: int, s: int) -> LowRankBlock:
        tt, st = self.target_tree, self.source_tree
        ti, sj = tt.indices(t), st.indices(s)
        m, n = self.m, self.n
        tol = self.options.tolerance

        def get_row(r):
            K = self._to_dof(self._kernel_block(ti[r // m:r // m + 1], sj))
            return K[r % m]

        def get_col(c):
            K = self._to_dof(self._kernel_block(ti, sj[c // n:c // n + 1]))
            return K[:, c % n]

        shape = (len(ti) * m, len(sj) * n)
        U, V, converged, error = aca(get_row, get_col, shape,
                                     _ACA_RTOL * tol,
                                     self.options.max_rank, self.dtype)
        if not converged:
            raise CompressionAccuracyUnmet((t, s), error, tol,
                                           self.options.max_rank)
        U, V = recompress(U, V, tol)

        # the last cross underestimates the error of some blocks
        rows = _sample(len(ti))
        cols = _sample(len(sj))
        exact_rows = self._to_dof(self._kernel_block(ti[rows], sj))
        exact_cols = self._to_dof(self._kernel_block(ti, sj[cols]))
        error = max(
            _relative_error(exact_rows, U[_dof_perm(rows, m)] @ V),
            _relative_error(exact_cols, U @ V[:, _dof_perm(cols, n)]))
        logger.debug("Low-rank block (%d, %d) rank %d: error %.3e",
                     t, s, U.shape[1], error)
        if error > tol:
            raise CompressionAccuracyUnmet((t, s), error, tol,
                                           self.options.max_rank)
        return LowRankBlock(slice(tt.start[t] * m, tt.stop[t] * m),
                            slice(st.start[s] * n, st.stop[s] * n), U, V)

    def _source_moments(self, s: int, p: int) -> np.ndarray:
        key = (s, p)
        with self._lock:
            if key in self._moments:
                return self._moments[key]
        st = self.source_tree
        sj = st.indices(s)
        scale = st.radius[s] if st.radius[s] > 0.0 else 1.0
        n_y = None if self.source.normals is None else self.source.normals[sj]
        V = self.expansion.moments(self.source.points[sj], n_y,
                                   self.source.weights[sj],
                                   st.center[s], scale, p)
        V.flags.writeable = False
        with self._lock:
            return self._moments.setdefault(key, V)

    def _multipole(self, t: int, s: int) -> MultipoleBlock:
        tt, st = self.target_tree, self.source_tree
        ti, sj = tt.indices(t), st.indices(s)
        tol = self.options.tolerance
        x = self.target.points[ti]
        n_x = None if self.target.normals is None else self.target.normals[ti]
        center = st.center[s]
        scale = st.radius[s] if st.radius[s] > 0.0 else 1.0

        gap = np.linalg.norm(tt.center[t] - center) - tt.radius[t]
        ratio = st.radius[s] / gap
        p = min(self.expansion.order_guess(ratio, st.radius[s], tol),
                self.options.max_order)

        sample = _sample(len(ti))
        exact = self._kernel_block(ti[sample], sj)
        exact_norm = np.linalg.norm(exact)

        error = np.inf
        while True:
            V = self._source_moments(s, p)
            U_sample = self.expansion.evaluation(
                x[sample], None if n_x is None else n_x[sample],
                center, scale, p)
            approx = U_sample @ V
            error = np.linalg.norm(exact - approx)
            roundoff = (U_sample.shape[1] * np.finfo(float).eps *
                        np.linalg.norm(U_sample) * np.linalg.norm(V))
            logger.debug("Multipole block (%d, %d) order %d: error %.3e",
                         t, s, p, error)
            if error <= max(tol * exact_norm, roundoff):
                break
            if p >= self.options.max_order:
                raise CompressionAccuracyUnmet(
                    (t, s), error / max(exact_norm, np.finfo(float).tiny),
                    tol, self.options.max_order)
            p = min(p + 2, self.options.max_order)

        U = self.expansion.evaluation(x, n_x, center, scale, p)
        return MultipoleBlock(slice(tt.start[t], tt.stop[t]),
                              slice(st.start[s], st.stop[s]), U, V, s, p)

    def _far(self, pair):
        t, s = pair
        try:
            if self.options.method == "multipole":
                return self._multipole(t, s), None
            return self._low_rank(t, s), None
        except CompressionAccuracyUnmet as err:
            if self.options.on_unmet == "raise":
                raise
            tt, st = self.target_tree, self.source_tree
            block = self._dense((tt.start[t], tt.stop[t]),
                                (st.start[s], st.stop[s]),
                                tt.indices(t), st.indices(s))
            return block, err

    def _near(self, pair):
        t, s = pair
        tt, st = self.target_tree, self.source_tree
        return self._dense((tt.start[t], tt.stop[t]),
                           (st.start[s], st.stop[s]),
                           tt.indices(t), st.indices(s))

    # -- public --------------------------------------------------------------

    def build(self) -> "FarFieldCompressor":
        """
        Construct all blocks.

        Raises:
            CompressionAccuracyUnmet: If a block misses the tolerance and
                ``on_unmet`` is ``"raise"``.
        """
        opts = self.options
        if opts.method == "none":
            Nt, Ns = self.target.num_points, self.source.num_points
            self._tgt_perm = np.arange(Nt)
            self._src_perm = np.arange(Ns)
            self._index_corrections(np.arange(Nt), np.arange(Ns))
            self.blocks = [self._dense((0, Nt), (0, Ns),
                                       self._tgt_perm, self._src_perm)]
        else:
            self.target_tree = ClusterTree(self.target.points,
                                           self.target.point_h,
                                           opts.leaf_size)
            if self.target is self.source:
                self.source_tree = self.target_tree
            else:
                self.source_tree = ClusterTree(self.source.points,
                                               self.source.point_h,
                                               opts.leaf_size)
            self._tgt_perm = self.target_tree.perm
            self._src_perm = self.source_tree.perm
            self._index_corrections(self.target_tree.inverse,
                                    self.source_tree.inverse)

            far, near = block_partition(self.target_tree, self.source_tree,
                                        opts.eta, self.near_factor)
            compressed = parallel_map(self._far, far, workers=opts.workers,
                                      desc="Far-field blocks",
                                      verbose=self.verbose)
            dense = parallel_map(self._near, near, workers=opts.workers,
                                 desc="Near-field blocks",
                                 verbose=self.verbose)
            self.blocks = []
            for block, err in compressed:
                self.blocks.append(block)
                if err is not None:
                    self._report_fallback(err)
            self.blocks.extend(dense)

        self._tgt_dofs = _dof_perm(self._tgt_perm, self.m)
        self._src_dofs = _dof_perm(self._src_perm, self.n)
        stats = self.stats
        logger.info("Compression '%s': %d blocks (%d dense, %d low-rank, "
                    "%d multipole, %d fallbacks), max rank %d, ratio %.2f.",
                    opts.method, stats.num_blocks, stats.num_dense,
                    stats.num_low_rank, stats.num_multipole,
                    stats.num_fallbacks, stats.max_rank,
                    stats.compression_ratio)
        return self

    def _report_fallback(self, err: CompressionAccuracyUnmet) -> None:
        self.fallbacks.append(err)
        message = (f"Block {err.block} missed tolerance {err.tolerance:.1e} "
                   f"(error {err.error:.2e}, budget {err.budget}); "
                   "using dense evaluation.")
        logger.warning(message)
        warnings.warn(message, CompressionAccuracyWarning,
                      stacklevel=external_stacklevel())

    def apply(self, x: np.ndarray) -> np.ndarray:
        """
        Multiply the block matrix with one or several vectors.

        Args:
            x (np.ndarray): Array of shape (Ns_dofs,) or (Ns_dofs, k) in
                table ordering.

        Returns:
            np.ndarray: Array of shape (Nt_dofs,) or (Nt_dofs, k).
        """
        x = np.asarray(x)
        squeeze = x.ndim == 1
        X = x.reshape(self.shape[1], -1)[self._src_dofs]

        moments = {}
        for block in self.blocks:
            if block.kind == "multipole" and block.key not in moments:
                moments[block.key] = block.V @ X[block.cols]

        def contribution(block):
            if block.kind == "multipole":
                return block.evaluate(moments[block.key])
            return block.matvec(X[block.cols])

        parts = parallel_map(contribution, self.blocks,
                             workers=self.options.workers)
        Y = np.zeros((self.shape[0], X.shape[1]),
                     dtype=np.result_type(self.dtype, X.dtype))
        for block, part in zip(self.blocks, parts):
            Y[block.rows] += part

        y = np.empty_like(Y)
        y[self._tgt_dofs] = Y
        return y[:, 0] if squeeze else y

    def to_dense(self) -> np.ndarray:
        """Full matrix in table ordering."""
        M = np.zeros(self.shape, dtype=self.dtype)
        for block in self.blocks:
            M[block.rows, block.cols] = block.to_dense()
        A = np.empty_like(M)
        A[np.ix_(self._tgt_dofs, self._src_dofs)] = M
        return A

    @property
    def stats(self) -> CompressionStats:
        kinds = [b.kind for b in self.blocks]
        compressed = [b.rank for b in self.blocks if b.kind != "dense"]
        nbytes = sum(b.nbytes for b in self.blocks) + \
                 sum(V.nbytes for V in self._moments.values())
        return CompressionStats(
            num_blocks=len(self.blocks),
            num_dense=kinds.count("dense"),
            num_low_rank=kinds.count("low-rank"),
            num_multipole=kinds.count("multipole"),
            num_fallbacks=len(self.fallbacks),
            max_rank=max(compressed, default=0),
            nbytes=int(nbytes),
            dense_nbytes=int(self.shape[0] * self.shape[1] *
                             self.dtype.itemsize))
