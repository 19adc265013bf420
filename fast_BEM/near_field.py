import logging
import numpy as np

from scipy import sparse
from scipy.spatial import KDTree

from fast_BEM.config import CorrectionOptions
from fast_BEM.integrators import ElementIntegrator
from fast_BEM.kernels import Kernel
from fast_BEM.table import Quadrature
from fast_BEM.utils import parallel_map

logger = logging.getLogger(__name__)

# Distance, relative to h_e, under which a target counts as lying on an
# element.
_ON_ELEMENT_RTOL = 1e-10


class CorrectionSet:
    """
    Sparse replacement entries of an assembled operator.

    Entry k states that the weighted kernel K(x_t, y_s) w_s of the pair
    (targets[k], sources[k]) is replaced by values[k]. Pairs are unique and
    sorted by target, then source.

    Attributes:
        targets (np.ndarray): Target point indices, shape (K,).
        sources (np.ndarray): Source point indices, shape (K,).
        values (np.ndarray): Replacement values, shape (K, *value_shape).
        shape (tuple[int, int]): (num_targets, num_sources) in points.
    """

    def __init__(self,
                 targets: np.ndarray,
                 sources: np.ndarray,
                 values: np.ndarray,
                 shape: tuple[int, int],
                 value_shape: tuple[int, ...] = ()):
        self.targets = np.asarray(targets, dtype=np.int64)
        self.sources = np.asarray(sources, dtype=np.int64)
        self.values = np.asarray(values)
        self.shape = (int(shape[0]), int(shape[1]))
        self.value_shape = tuple(value_shape)
        for a in (self.targets, self.sources, self.values):
            a.flags.writeable = False

    @classmethod
    def empty(cls, shape, value_shape=(), dtype=np.float64) -> "CorrectionSet":
        return cls(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64),
                   np.zeros((0,) + tuple(value_shape), dtype=dtype),
                   shape, value_shape)

    def __len__(self) -> int:
        return self.targets.shape[0]

    @property
    def block_size(self) -> tuple[int, int]:
        if self.value_shape == ():
            return 1, 1
        return self.value_shape[0], self.value_shape[1]

    def to_sparse(self) -> sparse.csr_matrix:
        """
        CSR matrix of the corrections in degree-of-freedom layout
        (component a of point i at row i * m + a).
        """
        m, n = self.block_size
        rows = (self.targets[:, None, None] * m +
                np.arange(m)[None, :, None]) + np.zeros((1, 1, n), dtype=int)
        cols = (self.sources[:, None, None] * n +
                np.arange(n)[None, None, :]) + np.zeros((1, m, 1), dtype=int)
        vals = self.values.reshape(len(self), m, n)
        return sparse.csr_matrix((vals.ravel(), (rows.ravel(), cols.ravel())),
                                 shape=(self.shape[0] * m,
                                        self.shape[1] * n))

    def lookup(self, target: int, source: int) -> np.ndarray | None:
        """Correction value of a single pair, or None."""
        lo = np.searchsorted(self.targets, target, side="left")
        hi = np.searchsorted(self.targets, target, side="right")
        k = np.nonzero(self.sources[lo:hi] == source)[0]
        if len(k) == 0:
            return None
        return self.values[lo + k[0]]

    def __repr__(self) -> str:
        return (f"CorrectionSet(entries={len(self)}, shape={self.shape}, "
                f"value_shape={self.value_shape})")


class NearFieldCorrector:
    """
    Computes singular and near-singular replacement entries.

    For every target the corrector finds the source elements whose centroid
    lies within ``near_factor * h_e`` and recomputes their contribution
    with an element integrator:

    - the target lies on the element (same table and element, coincident
      node, or on the element surface): singular rule with regularizing
      transform and Richardson extrapolation,
    - otherwise: near-singular rule of the configured method.
    """

    def __init__(self,
                 source: Quadrature,
                 target: Quadrature,
                 kernel: Kernel,
                 options: CorrectionOptions,
                 verbose: bool = False):
        self.source = source
        self.target = target
        self.kernel = kernel
        self.options = options
        self.verbose = verbose
        self.same_table = source is target
        self.integrator = ElementIntegrator(source, kernel, options)

    def neighbourhoods(self) -> list[np.ndarray]:
        """
        Near source elements of every target, sorted.

        Returns:
            list[np.ndarray]: Element indices per target point.
        """
        src, tgt = self.source, self.target
        radii = self.options.near_factor * src.element_sizes
        tree = KDTree(tgt.points)
        hits = tree.query_ball_point(src.element_centroids, r=radii)

        pairs = [np.column_stack([np.asarray(h, dtype=np.int64),
                                  np.full(len(h), e, dtype=np.int64)])
                 for e, h in enumerate(hits) if len(h) > 0]
        if self.same_table:
            pairs.append(np.column_stack([np.arange(src.num_points),
                                          src.element_ids]))
        coincident = self._coincident_nodes()
        if len(coincident) > 0:
            pairs.append(np.column_stack(
                [coincident[:, 0], src.element_ids[coincident[:, 1]]]))

        if pairs:
            pairs = np.unique(np.vstack(pairs), axis=0)
        else:
            pairs = np.zeros((0, 2), dtype=np.int64)
        splits = np.searchsorted(pairs[:, 0], np.arange(1, tgt.num_points))
        return np.split(pairs[:, 1], splits)

    def _coincident_nodes(self) -> np.ndarray:
        """(target, source point) pairs at zero distance."""
        if self.same_table:
            return np.column_stack([np.arange(self.source.num_points)] * 2)
        tree = KDTree(self.source.points)
        hits = tree.query_ball_point(self.target.points, r=0.0)
        out = [(i, j) for i, h in enumerate(hits) for j in h]
        return np.asarray(out, dtype=np.int64).reshape(-1, 2)

    def _on_element(self, i: int, e: int) -> np.ndarray | None:
        """Reference coordinates of target i on element e, if it lies on
        it."""
        src = self.source
        if self.same_table:
            if src.element_ids[i] == e:
                return src.ref_nodes[i]
            return None
        x = self.target.points[i]
        sl = src.element_slice(e)
        d = np.linalg.norm(src.points[sl] - x, axis=1)
        j = int(np.argmin(d))
        if d[j] == 0.0:
            return src.ref_nodes[sl][j]
        ref, dist = src.body.elements[e].closest_reference(x)
        if dist <= _ON_ELEMENT_RTOL * src.element_sizes[e]:
            return np.asarray(ref).reshape(src.ref_dim)
        return None

    def _row(self, args):
        i, elements = args
        x = self.target.points[i]
        n_x = None if self.target.normals is None else self.target.normals[i]
        sources, values = [], []
        num_self = 0
        for e in elements:
            ref_star = self._on_element(i, e)
            if ref_star is not None:
                W = self.integrator.singular_weights(x, n_x, e, ref_star, i)
                num_self += 1
            else:
                W = self.integrator.near_weights(x, n_x, e, i)
            sl = self.source.element_slice(e)
            sources.append(np.arange(sl.start, sl.stop))
            values.append(W)
        return sources, values, num_self

    def build(self) -> CorrectionSet:
        """
        Compute the corrections of all targets.

        Returns:
            CorrectionSet: Replacement entries sorted by target.

        Raises:
            CorrectionDivergence: If an element integral does not converge.
        """
        if self.kernel.needs_target_normals and self.target.normals is None:
            raise ValueError("The kernel layer needs target normals.")
        shape = (self.target.num_points, self.source.num_points)
        near = self.neighbourhoods()
        work = [(i, els) for i, els in enumerate(near) if len(els) > 0]
        if not work:
            return CorrectionSet.empty(shape, self.kernel.value_shape,
                                       self.kernel.dtype)

        rows = parallel_map(self._row, work,
                            workers=self.options.workers,
                            desc="Near-field corrections",
                            verbose=self.verbose)

        targets, sources, values = [], [], []
        num_self = 0
        for (i, _), (src, vals, n_self) in zip(work, rows):
            for s, v in zip(src, vals):
                targets.append(np.full(len(s), i, dtype=np.int64))
                sources.append(s)
                values.append(v)
            num_self += n_self

        targets = np.concatenate(targets)
        sources = np.concatenate(sources)
        values = np.concatenate(values, axis=0).astype(self.kernel.dtype,
                                                       copy=False)
        order = np.lexsort((sources, targets))
        corrections = CorrectionSet(targets[order], sources[order],
                                    values[order], shape,
                                    self.kernel.value_shape)
        logger.info("Near field: %d targets, %d element integrals "
                    "(%d singular), %d corrected entries.",
                    len(work), sum(len(els) for _, els in work), num_self,
                    len(corrections))
        return corrections
