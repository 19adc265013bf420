import logging
import numpy as np

from fast_BEM.config import CorrectionOptions
from fast_BEM.exceptions import CorrectionDivergence
from fast_BEM.kernels import Kernel
from fast_BEM.quadrature import (gauss_legendre,
                                 subdivided_gauss,
                                 graded_split_rule,
                                 geometric_split_rule,
                                 duffy_rule,
                                 subdivide_triangle_quad,
                                 split_triangles,
                                 vertex_split_rule,
                                 geometric_vertex_split_rule,
                                 interpolation_matrix)
from fast_BEM.table import Quadrature

logger = logging.getLogger(__name__)

# Targets closer than this fraction of h_e to an element are integrated
# with rules graded toward their projection onto the element.
CENTRED_RTOL = 0.5


class ElementIntegrator:
    """
    Element-wise integrator for a target point and one source element.

    Every method returns the weights W_j (j over the quadrature points of
    the element) of the element integral

        ∫_e K(x, y) σ(y) dS_y ≈ sum_j W_j σ_j,

    where σ is interpolated on the element from its own quadrature nodes.
    For the regular rule W_j = K(x, y_j) w_j; the singular and
    near-singular rules integrate the interpolant on refined reference
    rules.
    """

    def __init__(self,
                 source: Quadrature,
                 kernel: Kernel,
                 options: CorrectionOptions):
        """
        Args:
            source (Quadrature): Source table; must carry element geometry.
            kernel (Kernel): Layer kernel.
            options (CorrectionOptions): Orders, tolerances and budgets.
        """
        if not source.has_geometry:
            raise ValueError("Singular corrections need a source table "
                             "built from element geometry.")
        self.source = source
        self.kernel = kernel
        self.options = options
        self.elements = source.body.elements
        self.ref_dim = source.ref_dim
        self._floor = {}
        self._parts = self._singular_parts()

    def _singular_parts(self) -> list[tuple[complex, Kernel, int]]:
        """
        (coefficient, kernel, grading) of the terms of the self integral.

        On curve panels only logarithmic terms are graded; the bounded
        double-layer terms use split Gauss rules (grading 1), since (x - y)·n
        cancels on strongly graded nodes.
        """
        k = self.kernel
        m = self.options.grading
        if self.ref_dim != 1 or k.layer == "single":
            return [(1.0, k, m)]
        if k.layer == "combined":
            return [(k.alpha, k.with_layer("single"), m),
                    (k.beta, k.with_layer("double"), 1)]
        return [(1.0, k, 1)]

    # -- rules ---------------------------------------------------------------

    def _rule(self, ref_points, ref_weights, e, x, n_x, kernel=None):
        """Interpolation weights of element e for an arbitrary reference
        rule."""
        kernel = self.kernel if kernel is None else kernel
        el = self.elements[e]
        y, n_y, jac = el.map(ref_points)
        K = kernel.block(x[None, :], y,
                         None if n_x is None else n_x[None, :], n_y)[0]
        L = interpolation_matrix(self.ref_dim, self.source.order, ref_points)
        return np.einsum('p...,p,pj->j...', K, ref_weights * jac, L)

    def regular_weights(self,
                        x: np.ndarray,
                        n_x: np.ndarray | None,
                        e: int) -> np.ndarray:
        """K(x, y_j) w_j with the element's own rule."""
        sl = self.source.element_slice(e)
        n_y = None if self.source.normals is None else self.source.normals[sl]
        K = self.kernel.block(x[None, :], self.source.points[sl],
                              None if n_x is None else n_x[None, :], n_y)[0]
        w = self.source.weights[sl]
        return K * w.reshape((-1,) + (1,) * len(self.kernel.value_shape))

    def _singular_rule(self, ref_star, n, grading):
        if self.ref_dim == 1:
            s, w = graded_split_rule(float(ref_star[0]), n, grading)
            return s[:, None], w
        return vertex_split_rule(ref_star, n)

    def _centred_rule(self, e, ref_p, dist, n):
        """
        Rule graded toward ref_p, the projection of a target at distance
        dist from element e.
        """
        el = self.elements[e]
        if self.ref_dim == 1:
            t0 = float(ref_p[0])
            y = el.map(np.array([-1.0, t0, 1.0]))[0]
            depths = [_depth(dist, np.linalg.norm(y[k] - y[1]))
                      for k in (0, 2)]
            s, w = geometric_split_rule(t0, n, depths)
            return s[:, None], w
        p = np.asarray(ref_p, dtype=float).reshape(2)
        corners = [p]
        for a, b in split_triangles(p):
            corners.extend([p + a, p + b])
        y = el.map(np.vstack(corners))[0]
        reach = np.linalg.norm(y[1:] - y[0], axis=1).reshape(3, 2).max(axis=1)
        depths = [_depth(dist, r) for r in reach]
        return geometric_vertex_split_rule(p, n, depths)

    def _subdivided_rule(self, n, levels):
        if self.ref_dim == 1:
            s, w = subdivided_gauss(n, levels)
            return s[:, None], w
        return subdivide_triangle_quad(*duffy_rule(n), levels)

    def _oversampled_rule(self, n):
        if self.ref_dim == 1:
            s, w = gauss_legendre(n)
            return s[:, None], w
        return duffy_rule(n)

    # -- convergence ---------------------------------------------------------

    def floor(self, e: int) -> float:
        """Absolute size below which the change of an element integral
        counts as converged."""
        if e not in self._floor:
            h = float(self.source.element_sizes[e])
            measure = float(np.sum(self.source.weights[
                self.source.element_slice(e)]))
            self._floor[e] = measure * self.kernel.reference_scale(h)
        return self._floor[e]

    def _refine(self, rule_at_level, target, e):
        """
        Evaluate a sequence of rules until the estimated error of the last
        estimate is below the tolerance, then return the (Richardson
        extrapolated) last estimate.
        """
        tol = self.options.tolerance
        history = []
        err = np.inf
        for level in range(self.options.max_levels):
            history.append(rule_at_level(level))
            if len(history) < 2:
                continue
            scale = max(np.linalg.norm(history[-1]), self.floor(e))
            err = _error_estimate(history) / scale
            logger.debug("target %d element %d level %d: error %.3e",
                         target, e, level, err)
            if err <= tol:
                return _richardson(history)

        raise CorrectionDivergence(target, e, err, tol,
                                   self.options.max_levels)

    # -- public --------------------------------------------------------------

    def singular_weights(self,
                         x: np.ndarray,
                         n_x: np.ndarray | None,
                         e: int,
                         ref_star: np.ndarray,
                         target: int = -1) -> np.ndarray:
        """
        Weights of element e for a target lying on it.

        Args:
            x (np.ndarray): Target point, shape (d,).
            n_x (np.ndarray | None): Target normal, shape (d,).
            e (int): Source element.
            ref_star (np.ndarray): Reference coordinates of the target on e.
            target (int): Target index, used in error reports.

        Returns:
            np.ndarray: Weights, shape (n_e, *value_shape).
        """
        order = self.options.order

        def at_level(level):
            W = 0.0
            for coeff, kernel, grading in self._parts:
                ref, w = self._singular_rule(ref_star, order * 2**level,
                                             grading)
                W = W + coeff * self._rule(ref, w, e, x, n_x, kernel)
            return W

        return self._refine(at_level, target, e)

    def near_weights(self,
                     x: np.ndarray,
                     n_x: np.ndarray | None,
                     e: int,
                     target: int = -1) -> np.ndarray:
        """
        Weights of element e for a target close to, but not on, it.

        Targets within ``CENTRED_RTOL * h_e`` of the element use rules
        graded toward their projection onto it, whatever the method; the
        others use the rule family of the configured method. Either way the
        result is checked against the next refinement level.
        """
        opts = self.options
        order = opts.order
        ref_p, dist = self.elements[e].closest_reference(x)

        if dist < CENTRED_RTOL * self.source.element_sizes[e]:
            def rule(level):
                return self._centred_rule(e, ref_p, dist, order * 2**level)
        elif opts.method == "singularity-subtraction":
            def rule(level):
                return self._subdivided_rule(order, opts.near_levels + level)
        elif opts.method == "density-interpolation":
            def rule(level):
                return self._oversampled_rule(order * opts.upsample * 2**level)
        else:
            def rule(level):
                return self._subdivided_rule(order, level)

        def at_level(level):
            ref, w = rule(level)
            return self._rule(ref, w, e, x, n_x)

        return self._refine(at_level, target, e)


def _depth(dist: float, size: float) -> float:
    return dist / size if size > 0.0 else np.inf


def _error_estimate(history: list[np.ndarray]) -> float:
    """
    Error of the last term of a converging sequence.

    With three terms the contraction ratio q = |h2 - h1| / |h1 - h0| gives
    the tail |h2 - h1| q / (1 - q); otherwise the last change is used.
    """
    d2 = np.linalg.norm(history[-1] - history[-2])
    if len(history) < 3:
        return d2
    d1 = np.linalg.norm(history[-2] - history[-3])
    if not d2 < d1:
        return d2
    q = d2 / d1
    return d2 * q / (1.0 - q)


def _richardson(history: list[np.ndarray]) -> np.ndarray:
    """
    Aitken/Richardson extrapolation of a geometrically converging sequence.

    The contraction ratio q = |h2 - h1| / |h1 - h0| is estimated from the
    last three terms; the tail sum d q / (1 - q) is added only for clean
    geometric convergence above round-off.
    """
    if len(history) < 3:
        return history[-1]
    d1 = history[-2] - history[-3]
    d2 = history[-1] - history[-2]
    n1 = np.linalg.norm(d1)
    n2 = np.linalg.norm(d2)
    roundoff = 1e3 * np.finfo(float).eps * np.linalg.norm(history[-1])
    if n1 <= roundoff or n2 <= roundoff:
        return history[-1]
    q = n2 / n1
    if not 0.0 < q < 0.5:
        return history[-1]
    return history[-1] + d2 * q / (1.0 - q)
