import numpy as np

from scipy.optimize import brentq
from typing import Callable

from fast_BEM.quadrature import (gauss_legendre,
                                 duffy_rule,
                                 map_to_physical_triangle_batch)

# Number of Gauss points used to measure curved panels.
_MEASURE_POINTS = 40


class CurvePanel:
    """
    Panel of a parametrized planar curve.

    The reference coordinate s in [-1, 1] is mapped to the curve parameter
    t = t_a + (s + 1)/2 (t_b - t_a). The normal is the tangent rotated
    clockwise, which is the outward normal of a counter-clockwise curve.
    """
    dim = 2
    ref_dim = 1

    def __init__(self,
                 gamma: Callable[[np.ndarray], np.ndarray],
                 dgamma: Callable[[np.ndarray], np.ndarray],
                 t_a: float,
                 t_b: float):
        """
        Args:
            gamma (Callable): Vectorized parametrization, maps an array of
                shape (P,) to points of shape (P, 2).
            dgamma (Callable): Derivative of gamma, same signature.
            t_a (float): Parameter at the start of the panel.
            t_b (float): Parameter at the end of the panel.
        """
        self.gamma = gamma
        self.dgamma = dgamma
        self.t_a = float(t_a)
        self.t_b = float(t_b)

    def map(self,
            ref_points: np.ndarray) -> tuple[np.ndarray,
                                             np.ndarray,
                                             np.ndarray]:
        """
        Map reference coordinates to the physical panel.

        Args:
            ref_points (np.ndarray): Array of shape (P,) or (P, 1) in
                [-1, 1].

        Returns:
            points (np.ndarray): Physical points, shape (P, 2).
            normals (np.ndarray): Unit normals, shape (P, 2).
            jacobians (np.ndarray): |dy/ds|, shape (P,).
        """
        s = np.asarray(ref_points, dtype=float).reshape(-1)
        half = 0.5 * (self.t_b - self.t_a)
        t = self.t_a + (s + 1.0) * half
        points = np.asarray(self.gamma(t), dtype=float).reshape(-1, 2)
        tangent = np.asarray(self.dgamma(t), dtype=float).reshape(-1, 2) \
                  * half
        jac = np.linalg.norm(tangent, axis=1)
        safe = np.where(jac > 0.0, jac, 1.0)
        normals = np.column_stack([tangent[:, 1], -tangent[:, 0]]) \
                  / safe[:, None]
        return points, normals, jac

    def reference_rule(self, order: int) -> tuple[np.ndarray, np.ndarray]:
        """Gauss-Legendre rule with ``order`` points on [-1, 1]."""
        return gauss_legendre(order)

    def measure(self) -> float:
        """Arc length of the panel."""
        s, w = gauss_legendre(_MEASURE_POINTS)
        return float(np.sum(w * self.map(s)[2]))

    def centroid(self) -> np.ndarray:
        """Point at the parameter midpoint."""
        return self.map(np.zeros(1))[0][0]

    def diameter(self) -> float:
        """Largest distance from the centroid to the panel, doubled."""
        pts = self.map(np.linspace(-1.0, 1.0, 9))[0]
        return float(2.0 * np.max(np.linalg.norm(pts - self.centroid(),
                                                 axis=1)))

    def closest_reference(self, x: np.ndarray) -> tuple[np.ndarray, float]:
        """
        Reference coordinate of the panel point closest to x.

        Args:
            x (np.ndarray): Point of shape (2,).

        Returns:
            ref (np.ndarray): Reference coordinate, shape (1,).
            distance (float): Distance from x to the panel.
        """
        x = np.asarray(x, dtype=float).reshape(2)
        samples = np.linspace(-1.0, 1.0, 33)
        d = np.linalg.norm(self.map(samples)[0] - x, axis=1)
        k = int(np.argmin(d))
        lo = samples[max(k - 1, 0)]
        hi = samples[min(k + 1, len(samples) - 1)]

        def slope(s):
            # (y(s) - x) · tangent, zero at the closest point
            y, n, _ = self.map(np.array([s]))
            return float(np.dot(y[0] - x, [-n[0, 1], n[0, 0]]))

        best = samples[k]
        for a, b in ((lo, samples[k]), (samples[k], hi)):
            if a < b and slope(a) * slope(b) < 0.0:
                best = brentq(slope, a, b, xtol=1e-15)
                break
        dist = float(np.linalg.norm(self.map(np.array([best]))[0][0] - x))
        return np.array([best]), dist


class FlatTriangle:
    """
    Flat triangle y = v0 + xi e1 + eta e2 on the reference triangle
    0 <= xi, eta, xi + eta <= 1.
    """
    dim = 3
    ref_dim = 2

    def __init__(self,
                 v0: np.ndarray,
                 v1: np.ndarray,
                 v2: np.ndarray):
        self.v0 = np.asarray(v0, dtype=float).reshape(3)
        self.e1 = np.asarray(v1, dtype=float).reshape(3) - self.v0
        self.e2 = np.asarray(v2, dtype=float).reshape(3) - self.v0
        cross = np.cross(self.e1, self.e2)
        self.a2 = float(np.linalg.norm(cross))
        self.n_hat = cross / (self.a2 + 1e-300)

    @property
    def vertices(self) -> np.ndarray:
        return np.vstack([self.v0, self.v0 + self.e1, self.v0 + self.e2])

    def map(self,
            ref_points: np.ndarray) -> tuple[np.ndarray,
                                             np.ndarray,
                                             np.ndarray]:
        """
        Map reference coordinates to the physical triangle.

        Args:
            ref_points (np.ndarray): Array of shape (P, 2).

        Returns:
            points (np.ndarray): Physical points, shape (P, 3).
            normals (np.ndarray): Unit normals, shape (P, 3).
            jacobians (np.ndarray): ||e1×e2||, shape (P,).
        """
        xi_eta = np.asarray(ref_points, dtype=float).reshape(-1, 2)
        y, a2 = map_to_physical_triangle_batch(xi_eta,
                                               self.v0[None, :],
                                               self.e1[None, :],
                                               self.e2[None, :])
        P = xi_eta.shape[0]
        return y[0], np.tile(self.n_hat, (P, 1)), np.full(P, a2[0])

    def reference_rule(self, order: int) -> tuple[np.ndarray, np.ndarray]:
        """Collapsed (Duffy) tensor Gauss rule with ``order**2`` points."""
        return duffy_rule(order)

    def measure(self) -> float:
        return 0.5 * self.a2

    def centroid(self) -> np.ndarray:
        return self.v0 + (self.e1 + self.e2) / 3.0

    def diameter(self) -> float:
        """Longest edge."""
        return float(max(np.linalg.norm(self.e1),
                         np.linalg.norm(self.e2),
                         np.linalg.norm(self.e1 - self.e2)))

    def closest_reference(self, x: np.ndarray) -> tuple[np.ndarray, float]:
        """Reference coordinates (2,) of the closest triangle point and the
        distance to it."""
        x = np.asarray(x, dtype=float).reshape(3)
        A = np.column_stack([self.e1, self.e2])
        xi_eta = np.linalg.lstsq(A, x - self.v0, rcond=None)[0]
        if not (xi_eta[0] >= 0.0 and xi_eta[1] >= 0.0
                and xi_eta[0] + xi_eta[1] <= 1.0):
            xi_eta = _closest_on_edges(x - self.v0, A)
        y = self.v0 + A @ xi_eta
        return xi_eta, float(np.linalg.norm(x - y))

    def flipped(self) -> "FlatTriangle":
        """Same triangle with the opposite orientation."""
        v = self.vertices
        return FlatTriangle(v[0], v[2], v[1])


def _closest_on_edges(x: np.ndarray, A: np.ndarray) -> np.ndarray:
    """
    Reference coordinates of the point of the triangle boundary closest to
    x, measured in the physical metric of the edge matrix A = [e1, e2].
    """
    best, best_dist = None, np.inf
    for a, b in (((0.0, 0.0), (1.0, 0.0)),
                 ((1.0, 0.0), (0.0, 1.0)),
                 ((0.0, 1.0), (0.0, 0.0))):
        a = np.asarray(a)
        b = np.asarray(b)
        pa, edge = A @ a, A @ (b - a)
        t = np.clip(np.dot(x - pa, edge) / np.dot(edge, edge), 0.0, 1.0)
        dist = np.linalg.norm(x - pa - t * edge)
        if dist < best_dist:
            best, best_dist = a + t * (b - a), dist
    return best


class Body:
    """
    Ordered collection of boundary elements of a single type.

    Attributes:
        elements (list): Elements (all CurvePanel or all FlatTriangle).
        dim (int): Ambient dimension.
        ref_dim (int): Dimension of the reference element.
    """
    def __init__(self, elements: list):
        if len(elements) == 0:
            raise ValueError("A body needs at least one element.")
        kinds = {type(el) for el in elements}
        if len(kinds) != 1:
            raise ValueError("All elements of a body must share one type.")
        self.elements = list(elements)
        self.dim = self.elements[0].dim
        self.ref_dim = self.elements[0].ref_dim

    @property
    def num_elements(self) -> int:
        return len(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self):
        return iter(self.elements)

    def __getitem__(self, idx: int):
        return self.elements[idx]

    @classmethod
    def from_curve(cls,
                   gamma: Callable[[np.ndarray], np.ndarray],
                   dgamma: Callable[[np.ndarray], np.ndarray],
                   num_panels: int,
                   t_range: tuple[float, float] = (0.0, 2.0 * np.pi),
                   ) -> "Body":
        """
        Split a parametrized curve into panels of equal parameter length.

        Args:
            gamma (Callable): Vectorized parametrization t -> (P, 2).
            dgamma (Callable): Its derivative.
            num_panels (int): Number of panels.
            t_range (tuple[float, float]): Parameter interval.

        Returns:
            Body: Body made of CurvePanel elements.
        """
        if num_panels < 1:
            raise ValueError("num_panels must be at least 1.")
        edges = np.linspace(t_range[0], t_range[1], num_panels + 1)
        return cls([CurvePanel(gamma, dgamma, edges[i], edges[i + 1])
                    for i in range(num_panels)])

    @classmethod
    def from_triangles(cls,
                       mesh_nodes: np.ndarray,
                       mesh_elements: np.ndarray,
                       orient_from: np.ndarray | None = None) -> "Body":
        """
        Build a body from a triangle mesh.

        Args:
            mesh_nodes (np.ndarray): Array of shape (N, 3) with the node
                coordinates.
            mesh_elements (np.ndarray): Array of shape (M, 3) with the
                element connectivity.
            orient_from (np.ndarray | None): Optional interior point; when
                given, every triangle is flipped so that its normal points
                away from it.

        Returns:
            Body: Body made of FlatTriangle elements.
        """
        nodes = np.asarray(mesh_nodes, dtype=float)
        elements = np.asarray(mesh_elements, dtype=int)
        tris = [FlatTriangle(*nodes[el]) for el in elements]
        if orient_from is not None:
            c = np.asarray(orient_from, dtype=float).reshape(3)
            tris = [t.flipped() if np.dot(t.n_hat, t.centroid() - c) < 0.0
                    else t for t in tris]
        return cls(tris)


# ============================================================================
# Test geometries
# ============================================================================

def circle(radius: float = 1.0,
           num_panels: int = 16,
           center: tuple[float, float] = (0.0, 0.0)) -> Body:
    """Counter-clockwise circle split into equal panels."""
    return ellipse(radius, radius, num_panels, center)

def ellipse(a: float,
            b: float,
            num_panels: int = 16,
            center: tuple[float, float] = (0.0, 0.0)) -> Body:
    """Counter-clockwise ellipse with semi-axes a, b."""
    if a <= 0.0 or b <= 0.0:
        raise ValueError("Semi-axes must be positive.")
    c = np.asarray(center, dtype=float)

    def gamma(t):
        return np.column_stack([c[0] + a * np.cos(t), c[1] + b * np.sin(t)])

    def dgamma(t):
        return np.column_stack([-a * np.sin(t), b * np.cos(t)])

    return Body.from_curve(gamma, dgamma, num_panels)

def segment(p0: np.ndarray,
            p1: np.ndarray,
            num_panels: int = 1) -> Body:
    """Straight open segment from p0 to p1."""
    p0 = np.asarray(p0, dtype=float).reshape(2)
    d = np.asarray(p1, dtype=float).reshape(2) - p0

    def gamma(t):
        return p0[None, :] + np.asarray(t)[:, None] * d[None, :]

    def dgamma(t):
        return np.tile(d, (np.asarray(t).shape[0], 1))

    return Body.from_curve(gamma, dgamma, num_panels, t_range=(0.0, 1.0))

def box_mesh(center: np.ndarray,
             size: np.ndarray,
             divisions: int | None = None,
             ) -> tuple[np.ndarray, np.ndarray]:
    """
    Create a box mesh centered at 'center' with given 'size'.

    Args:
        center (np.ndarray): Center of the box (3,).
        size (np.ndarray): Size of the box along each axis (3,).
        divisions (int, optional): Number of subdivisions along each edge.

    Returns:
        v (np.ndarray): Array of shape (N, 3) with vertex coordinates.
        elements (np.ndarray): Array of shape (M, 3) with triangular element
            connectivity. Orientation is not consistent; pass the box center
            as ``orient_from`` to :meth:`Body.from_triangles`.
    """
    c = np.asarray(center, dtype=float).reshape(3)
    if np.any(np.asarray(size) <= 0):
        raise ValueError("Size dimensions must be positive.")

    if divisions is not None:
        if isinstance(divisions, (int, np.integer)):
            if divisions < 1:
                raise ValueError("Divisions must be at least 1.")
        else:
            raise ValueError("Divisions must be an integer.")

    h = 0.5 * np.asarray(size, dtype=float)
    signs = np.array([[-1, -1, -1], [1, -1, -1], [1, 1, -1], [-1, 1, -1],
                      [-1, -1, 1], [1, -1, 1], [1, 1, 1], [-1, 1, 1]])
    v = c + signs * h

    elements = np.array([[0, 1, 2], [0, 2, 3], [4, 5, 6], [4, 6, 7],
                         [0, 1, 5], [0, 5, 4], [2, 3, 7], [2, 7, 6],
                         [0, 3, 7], [0, 7, 4], [1, 2, 6], [1, 6, 5]])

    if divisions is not None and divisions > 1:
        v, elements = subdivide_triangles(v, elements, divisions)

    return v, elements

def sphere_mesh(radius: float = 1.0,
                divisions: int = 4,
                center: tuple[float, float, float] = (0.0, 0.0, 0.0),
                ) -> Body:
    """
    Flat-triangle approximation of a sphere: a subdivided cube projected
    radially onto the sphere, oriented outward.
    """
    if radius <= 0.0:
        raise ValueError("radius must be positive.")
    c = np.asarray(center, dtype=float).reshape(3)
    v, elements = box_mesh(np.zeros(3), np.full(3, 2.0), divisions)
    v = v / np.linalg.norm(v, axis=1, keepdims=True)
    return Body.from_triangles(c + radius * v, elements, orient_from=c)

def subdivide_triangles(vertices, elements, divisions=1):
    """
    Subdivide triangular elements into smaller triangles.

    Args:
        vertices (np.ndarray): Array of shape (N, 3) containing vertex
            coordinates.
        elements (np.ndarray): Array of shape (M, 3) containing element
            connectivity.
        divisions (int): Number of divisions per edge. Must be >= 1.

    Returns:
        new_vertices (np.ndarray): Array of shape (N_new, 3) with subdivided
            vertices.
        new_elements (np.ndarray): Array of shape (M_new, 3) with subdivided
            elements.
    """
    if divisions < 1:
        raise ValueError("Divisions must be at least 1.")

    if divisions == 1:
        return vertices.copy(), elements.copy()

    vertex_dict = {}
    vertex_list = []
    new_elements_list = []

    for elem in elements:
        v0, v1, v2 = vertices[elem[0]], vertices[elem[1]], vertices[elem[2]]

        subdiv_indices = np.zeros((divisions + 1, divisions + 1), dtype=int)

        for i in range(divisions + 1):
            for j in range(divisions + 1 - i):
                u = i / divisions
                v = j / divisions
                w = 1 - u - v

                point = w * v0 + u * v1 + v * v2
                subdiv_indices[i, j] = get_vertex_index(point,
                                                        vertex_dict,
                                                        vertex_list)

        for i in range(divisions):
            for j in range(divisions - i):
                idx0 = subdiv_indices[i, j]
                idx1 = subdiv_indices[i + 1, j]
                idx2 = subdiv_indices[i, j + 1]
                new_elements_list.append([idx0, idx1, idx2])

                if j < divisions - i - 1:
                    idx0 = subdiv_indices[i + 1, j]
                    idx1 = subdiv_indices[i + 1, j + 1]
                    idx2 = subdiv_indices[i, j + 1]
                    new_elements_list.append([idx0, idx1, idx2])

    new_vertices = np.array(vertex_list, dtype=float)
    new_elements = np.array(new_elements_list, dtype=int)

    return new_vertices, new_elements

def get_vertex_index(coord, vertex_dict, vertex_list):
    """Get or create vertex index for given coordinates."""
    coord_tuple = tuple(np.round(coord, 12))
    if coord_tuple not in vertex_dict:
        vertex_dict[coord_tuple] = len(vertex_list)
        vertex_list.append(coord)
    return vertex_dict[coord_tuple]
