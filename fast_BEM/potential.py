import logging
import numpy as np

from scipy.spatial import KDTree
from tqdm import tqdm

from fast_BEM.exceptions import EvaluationNearSingularity, SingularEvaluation
from fast_BEM.kernels import Kernel
from fast_BEM.table import Quadrature

logger = logging.getLogger(__name__)


class PotentialEvaluator:
    """
    Layer potentials at arbitrary points off the boundary.

    The potential of a density σ sampled on the source table is

        u(x) = sum_j K(x, y_j) w_j σ_j,

    which is accurate as long as x stays away from the boundary. Points
    closer than ``near_tolerance * h_e`` to a source element are rejected.
    """

    def __init__(self,
                 source: Quadrature,
                 kernel: Kernel,
                 near_tolerance: float = 1e-2,
                 chunk_size: int = 1024,
                 verbose: bool = False):
        """
        Args:
            source (Quadrature): Source table.
            kernel (Kernel): Layer kernel.
            near_tolerance (float): Rejection distance in units of the
                element size.
            chunk_size (int): Evaluation points per kernel block.
            verbose (bool): Show a progress bar.
        """
        if kernel.dim != source.dim:
            raise ValueError("Kernel and source dimensions differ.")
        if kernel.needs_source_normals and source.normals is None:
            raise ValueError(f"The {kernel.layer} layer needs source normals.")
        if near_tolerance < 0.0:
            raise ValueError("near_tolerance must be non-negative.")
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1.")
        self.source = source
        self.kernel = kernel
        self.near_tolerance = float(near_tolerance)
        self.chunk_size = int(chunk_size)
        self.verbose = verbose
        self._tree = KDTree(source.points)
        self._centroids = KDTree(source.element_centroids)

    def _flag_near(self, points: np.ndarray) -> np.ndarray:
        """Indices of points too close to the source boundary."""
        src = self.source
        dist, nearest = self._tree.query(points)
        flagged = dist == 0.0
        flagged |= dist <= self.near_tolerance * src.point_h[nearest]
        if not src.has_geometry or self.near_tolerance == 0.0:
            return np.nonzero(flagged)[0]

        # Points between the nodes of an element are found by projection.
        h_max = float(src.element_sizes.max())
        candidates = np.nonzero(~flagged & (dist <= h_max))[0]
        hits = self._centroids.query_ball_point(points[candidates], r=h_max)
        for i, elements in zip(candidates, hits):
            for e in elements:
                el = src.body.elements[e]
                _, d = el.closest_reference(points[i])
                if d <= self.near_tolerance * src.element_sizes[e]:
                    flagged[i] = True
                    break
        return np.nonzero(flagged)[0]

    def _density(self, density: np.ndarray) -> np.ndarray:
        m = self.kernel.value_shape[0] if self.kernel.value_shape else 1
        density = np.asarray(density)
        N = self.source.num_points
        if density.size != N * m:
            raise ValueError(f"Expected a density with {N * m} entries, "
                             f"got {density.size}.")
        return density.reshape(N, m) if m > 1 else density.reshape(N)

    def evaluate(self,
                 points: np.ndarray,
                 density: np.ndarray,
                 normals: np.ndarray | None = None,
                 check: bool = True) -> np.ndarray:
        """
        Evaluate the potential.

        Args:
            points (np.ndarray): Evaluation points, shape (M, d).
            density (np.ndarray): Density at the source points, shape (N,)
                or, for tensor kernels, (N, d) or interleaved (N*d,).
            normals (np.ndarray | None): Normals at the evaluation points,
                needed by the adjoint layer.
            check (bool): Reject points close to the boundary.

        Returns:
            np.ndarray: Potential of shape (M,) or (M, d).

        Raises:
            EvaluationNearSingularity: If points coincide with, or are too
                close to, the boundary.
        """
        points = np.atleast_2d(np.asarray(points, dtype=float))
        if points.shape[1] != self.kernel.dim:
            raise ValueError(f"Points must have {self.kernel.dim} columns.")
        if self.kernel.needs_target_normals and normals is None:
            raise ValueError("The adjoint layer needs evaluation normals.")
        sigma = self._density(density)

        if check:
            bad = self._flag_near(points)
            if len(bad) > 0:
                raise EvaluationNearSingularity(bad)

        src = self.source
        ws = src.weights[:, None] * sigma if sigma.ndim == 2 \
            else src.weights * sigma
        M = points.shape[0]
        out_shape = (M,) + ((sigma.shape[1],) if sigma.ndim == 2 else ())
        u = np.zeros(out_shape,
                     dtype=np.result_type(self.kernel.dtype, sigma.dtype))

        starts = range(0, M, self.chunk_size)
        for s in tqdm(starts, desc="Evaluating potential",
                      disable=not self.verbose):
            sl = slice(s, min(s + self.chunk_size, M))
            n_x = None if normals is None else np.asarray(normals)[sl]
            try:
                K = self.kernel.block(points[sl], src.points, n_x,
                                      src.normals)
            except SingularEvaluation as err:
                raise EvaluationNearSingularity(
                    np.unique(err.pairs[:, 0]) + s) from err
            if sigma.ndim == 2:
                u[sl] = np.einsum('ijab,jb->ia', K, ws)
            else:
                u[sl] = K @ ws
        logger.debug("Evaluated %r at %d points.", self.kernel, M)
        return u

    def representation(self,
                       points: np.ndarray,
                       dirichlet: np.ndarray,
                       neumann: np.ndarray,
                       side: str = "exterior",
                       check: bool = True) -> np.ndarray:
        """
        Green's representation formula from boundary data.

        exterior: u = D[u] - S[∂u/∂n],  interior: u = S[∂u/∂n] - D[u],
        with the normal pointing out of the interior domain.

        Args:
            points (np.ndarray): Evaluation points, shape (M, d).
            dirichlet (np.ndarray): Boundary values u at the source points.
            neumann (np.ndarray): Normal derivatives ∂u/∂n.
            side (str): "exterior" or "interior".
            check (bool): Reject points close to the boundary.

        Returns:
            np.ndarray: Potential at the points.
        """
        if side not in ("interior", "exterior"):
            raise ValueError("side must be 'interior' or 'exterior'.")
        single = PotentialEvaluator(self.source,
                                    self.kernel.with_layer("single"),
                                    self.near_tolerance, self.chunk_size)
        double = PotentialEvaluator(self.source,
                                    self.kernel.with_layer("double"),
                                    self.near_tolerance, self.chunk_size)
        S = single.evaluate(points, neumann, check=check)
        D = double.evaluate(points, dirichlet, check=False)
        return D - S if side == "exterior" else S - D
