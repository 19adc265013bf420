import warnings
import numpy as np

from functools import lru_cache

# ============================================================================
# Gauss-Legendre rules
# ============================================================================

@lru_cache(maxsize=None)
def _gauss_legendre_cached(n: int) -> tuple[np.ndarray, np.ndarray]:
    points, weights = np.polynomial.legendre.leggauss(n)
    points = np.asarray(points, dtype=np.float64, order='C')
    weights = np.asarray(weights, dtype=np.float64, order='C')
    points.flags.writeable = False
    weights.flags.writeable = False
    return points, weights

def gauss_legendre(n: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Gauss-Legendre points and weights on [-1, 1].

    Results are cached; the returned arrays are copies and may be modified
    by the caller.

    Args:
        n (int): Number of quadrature points.

    Returns:
        points (np.ndarray): Array of shape (n,) with the nodes.
        weights (np.ndarray): Array of shape (n,) with the weights
            (sum(weights) = 2).
    """
    if n < 1:
        raise ValueError("Number of quadrature points must be at least 1.")
    points, weights = _gauss_legendre_cached(int(n))
    return points.copy(), weights.copy()

def gauss_legendre_1d(n: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute the Gauss-Legendre quadrature points and weights on [0, 1].

    Args:
        n (int): Number of quadrature points.

    Returns:
        points (np.ndarray): Array of shape (n,) representing the quadrature
            points on [0, 1].
        weights (np.ndarray): Array of shape (n,) representing the quadrature
            weights (sum(weights) = 1).
    """
    points, weights = gauss_legendre(n)
    return 0.5 * (points + 1.0), 0.5 * weights

def subdivided_gauss(n: int,
                     levels: int,
                     a: float = -1.0,
                     b: float = 1.0) -> tuple[np.ndarray, np.ndarray]:
    """
    Composite Gauss-Legendre rule: [a, b] is split into 2**levels equal
    pieces, each carrying an n-point rule.

    Args:
        n (int): Points per piece.
        levels (int): Number of bisection levels.
        a (float): Left end of the interval.
        b (float): Right end of the interval.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes and weights on [a, b].
    """
    s, w = gauss_legendre_1d(n)
    pieces = 2 ** int(levels)
    edges = np.linspace(a, b, pieces + 1)
    length = edges[1:] - edges[:-1]
    t = edges[:-1, None] + length[:, None] * s[None, :]
    wt = length[:, None] * w[None, :]
    return t.ravel(), wt.ravel()

# ============================================================================
# Singular integration on an interval: graded split rule
# ============================================================================

def graded_split_rule(t0: float,
                      n: int,
                      grading: int = 3,
                      a: float = -1.0,
                      b: float = 1.0) -> tuple[np.ndarray, np.ndarray]:
    """
    Quadrature on [a, b] for integrands singular at t0.

    The interval is split at t0 and each half is mapped from [0, 1] with
    the polynomial grading t = t0 ± L s^m. The Jacobian m L s^(m-1)
    vanishes at the singularity and removes log|t - t0| and weakly
    singular behaviour before the Gauss rule is applied.

    Args:
        t0 (float): Location of the singularity, a <= t0 <= b.
        n (int): Gauss points per half.
        grading (int): Grading exponent m.
        a (float): Left end of the interval.
        b (float): Right end of the interval.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes and weights on [a, b].
    """
    s, w = gauss_legendre_1d(n)
    m = int(grading)
    nodes = []
    weights = []
    for direction, length in ((-1.0, t0 - a), (1.0, b - t0)):
        if length <= 0.0:
            continue
        nodes.append(t0 + direction * length * s**m)
        weights.append(length * m * s**(m - 1) * w)
    if not nodes:
        raise ValueError("Degenerate interval in graded_split_rule.")
    return np.concatenate(nodes), np.concatenate(weights)

# ============================================================================
# Mapping functions
# ============================================================================

def map_to_physical_triangle_batch(xi_eta: np.ndarray,
                                   v0: np.ndarray,
                                   e1: np.ndarray,
                                   e2: np.ndarray) -> tuple[np.ndarray,
                                                            np.ndarray]:
    """
    Vectorized mapping for K triangles at once.

    Args:
        xi_eta (np.ndarray): Array of shape (Q, 2) representing the
            quadrature points in barycentric coordinates.
        v0 (np.ndarray): Array of shape (K, 3) representing the first
            vertex of each triangle.
        e1 (np.ndarray): Array of shape (K, 3) representing the edge
            vector from v0 to v1 for each triangle.
        e2 (np.ndarray): Array of shape (K, 3) representing the edge
            vector from v0 to v2 for each triangle.

    Returns:
        y (np.ndarray): Array of shape (K, Q, 3) representing the
            quadrature points in physical coordinates.
        a2 (np.ndarray): Array of shape (K,) representing the Jacobian
            scale (||e1×e2||), i.e. twice the *physical* triangle area.
    """
    xi = xi_eta[:, 0][None, :]
    eta = xi_eta[:, 1][None, :]
    y = v0[:, None, :] + \
        xi[..., None]*e1[:, None, :] + \
        eta[..., None]*e2[:, None, :]
    a2 = np.linalg.norm(np.cross(e1, e2), axis=1)
    return y, a2

# ============================================================================
# Triangle rules
# ============================================================================

def duffy_rule(n_leg: int = 8) -> tuple[np.ndarray, np.ndarray]:
    """
    Generate quadrature points and weights for a triangle using the Duffy
    transformation from a square.

    The point with square coordinates (u_a, v_b) is stored at index
    a * n_leg + b.

    Args:
        n_leg (int, optional): Number of Gauss-Legendre points along one edge
            of the square. The total number of quadrature points will be
            n_leg**2. Default is 8.

    Returns:
        quad_points (np.ndarray): Array of shape (N, 2) representing the
            quadrature points in barycentric coordinates.
        quad_weights (np.ndarray): Array of shape (N,) representing the
            quadrature weights (sum = 1/2).
    """
    u, wu = gauss_legendre_1d(n_leg)
    v, wv = gauss_legendre_1d(n_leg)

    XI  = np.multiply.outer(u, (1.0 - v))
    ETA = np.multiply.outer(u, v)
    w   = (np.multiply.outer(wu, wv) * u[:, None]).ravel()

    pts = np.stack([XI.ravel(), ETA.ravel()], axis=1)
    pts = np.asarray(pts, dtype=np.float64, order='C')
    w   = np.asarray(w, dtype=np.float64, order='C')

    return pts, w

def refined_triangle_quad(xi_eta: np.ndarray,
                          weights: np.ndarray,
                          ) -> tuple[np.ndarray, np.ndarray]:
    """
    Refine a single triangle into four smaller triangles and adjust the
    quadrature points and weights accordingly.

    Args:
        xi_eta (np.ndarray): Array of shape (N, 2) representing the
            quadrature points in barycentric coordinates.
        weights (np.ndarray): Array of shape (N,) representing the
            quadrature weights.

    Returns:
        xi_eta_ref (np.ndarray): Array of shape (4N, 2) representing the
            refined quadrature points in barycentric coordinates.
        w_ref (np.ndarray): Array of shape (4N,) representing the
            refined quadrature weights.
    """
    xi  = xi_eta[:, 0]
    eta = xi_eta[:, 1]
    Wq = weights * 0.25

    X1 = np.column_stack((      0.5 * xi,            0.5 * eta))
    X2 = np.column_stack((0.5 + 0.5 * xi,            0.5 * eta))
    X3 = np.column_stack((      0.5 * xi,      0.5 + 0.5 * eta))
    X4 = np.column_stack((0.5 - 0.5 * xi, 0.5 * xi + 0.5 * eta))

    xi_eta_ref = np.vstack((X1, X2, X3, X4))
    w_ref      = np.concatenate((Wq, Wq, Wq, Wq))

    return xi_eta_ref, w_ref

def subdivide_triangle_quad(xi_eta: np.ndarray,
                            weights: np.ndarray,
                            levels: int = 1,
                            ) -> tuple[np.ndarray, np.ndarray]:
    """
    Recursively refine a triangle into smaller triangles and adjust the
    quadrature points and weights accordingly.

    Args:
        xi_eta (np.ndarray): Array of shape (N, 2) representing the
            quadrature points in barycentric coordinates.
        weights (np.ndarray): Array of shape (N,) representing the
            quadrature weights.
        levels (int, optional): Number of refinement levels. Each level
            subdivides each triangle into four smaller triangles. Default is 1.

    Returns:
        tuple[np.ndarray, np.ndarray]: Refined quadrature points and weights.
    """
    pts = np.asarray(xi_eta, dtype=float)
    w   = np.asarray(weights, dtype=float)

    if levels < 0:
        warnings.warn("Number of refinement levels must be non-negative. "
                      "Returning original points and weights.")
        return pts, w

    for _ in range(levels):
        pts, w = refined_triangle_quad(pts, w)

    pts = np.asarray(pts, dtype=np.float64, order='C')
    w   = np.asarray(w, dtype=np.float64, order='C')

    return pts, w

# ============================================================================
# Singular integration on a triangle: vertex split + Duffy
# ============================================================================

_REFERENCE_VERTICES = np.array([[0.0, 0.0],
                                [1.0, 0.0],
                                [0.0, 1.0]])

def split_triangles(xi_eta_star: np.ndarray) -> list[tuple[np.ndarray,
                                                           np.ndarray]]:
    """
    Edge vectors (a, b) of the three sub-triangles (p, p + a, p + b) of the
    reference triangle that share the point p as a vertex. Entry k is the
    sub-triangle opposite to vertex k; all three are returned, including
    degenerate ones.
    """
    p = np.asarray(xi_eta_star, dtype=float).reshape(2)
    return [(_REFERENCE_VERTICES[(k + 1) % 3] - p,
             _REFERENCE_VERTICES[(k + 2) % 3] - p) for k in range(3)]

def _split_rule(p, local_rules):
    nodes = []
    weights = []
    for (a, b), (local_pts, local_w) in zip(split_triangles(p), local_rules):
        det = abs(a[0] * b[1] - a[1] * b[0])
        if det <= 1e-14:
            continue
        nodes.append(p[None, :] + local_pts[:, [0]] * a[None, :] + \
                     local_pts[:, [1]] * b[None, :])
        weights.append(local_w * det)
    return np.vstack(nodes), np.concatenate(weights)

def vertex_split_rule(xi_eta_star: np.ndarray,
                      n_leg: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Quadrature on the reference triangle for integrands with a 1/r
    singularity at an interior (or boundary) point.

    The triangle is split into the three sub-triangles that share the
    singular point as a vertex. Each sub-triangle receives a Duffy rule
    collapsed at that vertex, whose Jacobian (proportional to r) cancels
    the singularity. Sub-triangles of zero area (singular point on an edge
    or at a vertex) are dropped.

    Args:
        xi_eta_star (np.ndarray): Reference coordinates (2,) of the
            singular point.
        n_leg (int): Gauss points per square direction of each Duffy rule.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes (N, 2) and weights (N,) on the
            reference triangle (sum of weights = 1/2).
    """
    p = np.asarray(xi_eta_star, dtype=float).reshape(2)
    rule = duffy_rule(n_leg)
    return _split_rule(p, [rule] * 3)

# ============================================================================
# Near-singular integration: geometric grading toward a point
# ============================================================================

# Ratio of successive layers of the geometric rules.
GEOMETRIC_RATIO = 0.15
_MAX_LAYERS = 40

def geometric_rule(n: int,
                   depth: float,
                   ratio: float = GEOMETRIC_RATIO) -> tuple[np.ndarray,
                                                            np.ndarray]:
    """
    Composite Gauss rule on [0, 1] graded geometrically toward 0.

    The interval is cut at ratio**k, k = 0..L, with the smallest L for
    which ratio**L <= depth, and every piece carries an n-point rule. For
    an integrand that is analytic except for a singularity at distance
    ``depth`` from 0, every piece sees the singularity at a fixed relative
    distance, so the error decays geometrically in n.

    Args:
        n (int): Gauss points per piece.
        depth (float): Distance of the singularity from 0, relative to the
            interval length.
        ratio (float): Layer ratio, 0 < ratio < 1.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes and weights on [0, 1].
    """
    layers = 0
    if not depth > 0.0:
        layers = _MAX_LAYERS
    elif depth < 1.0:
        layers = min(int(np.ceil(np.log(depth) / np.log(ratio))), _MAX_LAYERS)
    edges = np.concatenate([[0.0], ratio ** np.arange(layers, -1, -1.0)])
    s, w = gauss_legendre_1d(n)
    length = edges[1:] - edges[:-1]
    t = edges[:-1, None] + length[:, None] * s[None, :]
    wt = length[:, None] * w[None, :]
    return t.ravel(), wt.ravel()

def geometric_split_rule(t0: float,
                         n: int,
                         depths: tuple[float, float],
                         a: float = -1.0,
                         b: float = 1.0) -> tuple[np.ndarray, np.ndarray]:
    """
    Quadrature on [a, b] for integrands nearly singular above t0.

    The interval is split at t0 and each side is covered by a
    :func:`geometric_rule` graded toward t0.

    Args:
        t0 (float): Point of [a, b] closest to the singularity.
        n (int): Gauss points per piece.
        depths (tuple[float, float]): Distance of the singularity relative
            to the length of the left and of the right side.
        a (float): Left end of the interval.
        b (float): Right end of the interval.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes and weights on [a, b].
    """
    nodes = []
    weights = []
    for (direction, length), depth in zip(((-1.0, t0 - a), (1.0, b - t0)),
                                          depths):
        if length <= 0.0:
            continue
        s, w = geometric_rule(n, depth)
        nodes.append(t0 + direction * length * s)
        weights.append(length * w)
    if not nodes:
        raise ValueError("Degenerate interval in geometric_split_rule.")
    return np.concatenate(nodes), np.concatenate(weights)

def geometric_duffy_rule(n: int,
                         depth: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Duffy rule collapsed at vertex (0, 0) whose radial direction is a
    :func:`geometric_rule` graded toward the collapsed vertex.
    """
    u, wu = geometric_rule(n, depth)
    v, wv = gauss_legendre_1d(n)
    pts = np.column_stack([np.multiply.outer(u, 1.0 - v).ravel(),
                           np.multiply.outer(u, v).ravel()])
    w = (np.multiply.outer(wu, wv) * u[:, None]).ravel()
    return pts, w

def geometric_vertex_split_rule(xi_eta_star: np.ndarray,
                                n: int,
                                depths: tuple[float, float, float],
                                ) -> tuple[np.ndarray, np.ndarray]:
    """
    Vertex split of the reference triangle at a point p, each sub-triangle
    carrying a :func:`geometric_duffy_rule` graded toward p.

    Args:
        xi_eta_star (np.ndarray): Reference coordinates (2,) of p.
        n (int): Gauss points per direction and layer.
        depths (tuple): Distance of the singularity relative to the size
            of each sub-triangle, in the order of :func:`split_triangles`.

    Returns:
        tuple[np.ndarray, np.ndarray]: Nodes (N, 2) and weights (N,) on the
            reference triangle (sum of weights = 1/2).
    """
    p = np.asarray(xi_eta_star, dtype=float).reshape(2)
    return _split_rule(p, [geometric_duffy_rule(n, d) for d in depths])

# ============================================================================
# Interpolation on the reference element
# ============================================================================

def lagrange_basis(nodes: np.ndarray,
                   x: np.ndarray) -> np.ndarray:
    """
    Evaluate the Lagrange basis polynomials of a 1-D node set.

    Args:
        nodes (np.ndarray): Array of shape (n,) with distinct nodes.
        x (np.ndarray): Array of shape (P,) with evaluation points.

    Returns:
        np.ndarray: Array of shape (P, n); column j holds L_j(x).
    """
    nodes = np.asarray(nodes, dtype=float)
    x = np.asarray(x, dtype=float)
    n = nodes.shape[0]
    diff = x[:, None] - nodes[None, :]
    L = np.ones((x.shape[0], n))
    for j in range(n):
        others = np.delete(np.arange(n), j)
        L[:, j] = np.prod(diff[:, others], axis=1) / \
                  np.prod(nodes[j] - nodes[others])
    return L

def triangle_vandermonde(xi_eta: np.ndarray,
                         degree: int) -> np.ndarray:
    """
    Products of Legendre polynomials P_a(2 xi - 1) P_b(2 eta - 1) with
    a + b <= degree, evaluated at reference points of shape (P, 2).
    """
    xi_eta = np.asarray(xi_eta, dtype=float).reshape(-1, 2)
    full = np.polynomial.legendre.legvander2d(2.0 * xi_eta[:, 0] - 1.0,
                                              2.0 * xi_eta[:, 1] - 1.0,
                                              [degree, degree])
    a, b = np.meshgrid(np.arange(degree + 1), np.arange(degree + 1),
                       indexing='ij')
    return full[:, (a + b <= degree).ravel()]

@lru_cache(maxsize=None)
def _triangle_projection(order: int) -> np.ndarray:
    nodes, weights = duffy_rule(order)
    root = np.sqrt(weights)
    Q, R = np.linalg.qr(root[:, None] * triangle_vandermonde(nodes, order - 1))
    C = np.linalg.solve(R, Q.T * root[None, :])
    C.flags.writeable = False
    return C

def interpolation_matrix(ref_dim: int,
                         order: int,
                         ref_points: np.ndarray) -> np.ndarray:
    """
    Interpolation matrix from the nodes of the element rule of a given
    order to arbitrary reference points.

    For curve panels (ref_dim = 1) the nodes are the Gauss-Legendre points
    on [-1, 1] and the matrix evaluates the Lagrange interpolant. For
    triangles (ref_dim = 2) the order**2 nodes of :func:`duffy_rule`
    outnumber the polynomials of total degree order - 1; the matrix
    evaluates their discrete L2 projection onto that space, which the Duffy
    rule computes exactly for polynomial data (degree 2 * order - 2).

    Args:
        ref_dim (int): Dimension of the reference element (1 or 2).
        order (int): Order of the element rule.
        ref_points (np.ndarray): Reference coordinates, shape (P,) or
            (P, ref_dim).

    Returns:
        np.ndarray: Array of shape (P, n_nodes).
    """
    if ref_dim == 1:
        nodes, _ = gauss_legendre(order)
        return lagrange_basis(nodes, np.asarray(ref_points).reshape(-1))
    if ref_dim == 2:
        V = triangle_vandermonde(ref_points, order - 1)
        return V @ _triangle_projection(int(order))
    raise ValueError("ref_dim must be 1 or 2.")
