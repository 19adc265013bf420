import logging
import numpy as np

from collections import namedtuple

from fast_BEM.exceptions import DegenerateElement
from fast_BEM.geometry import Body

logger = logging.getLogger(__name__)

QuadraturePoint = namedtuple("QuadraturePoint",
                             ["point", "normal", "weight", "element"])

# Relative measure below which an element is treated as degenerate.
_DEGENERATE_RTOL = 1e-14


def _readonly(a: np.ndarray, dtype) -> np.ndarray:
    a = np.ascontiguousarray(a, dtype=dtype)
    a.flags.writeable = False
    return a


class Quadrature:
    """
    Ordered table of weighted quadrature points on a boundary.

    Row i of every array describes quadrature point i; the points of one
    element are contiguous and the table order is the row/column order of
    every operator assembled on it. All arrays are read-only.

    Attributes:
        points (np.ndarray): Coordinates, shape (N, d).
        normals (np.ndarray | None): Unit normals, shape (N, d), or None for
            a bare point cloud.
        weights (np.ndarray): Reference weight times Jacobian, shape (N,).
        element_ids (np.ndarray): Owning element of each point, shape (N,).
        ref_nodes (np.ndarray): Reference coordinates, shape (N, ref_dim).
        element_offsets (np.ndarray): Start of every element, shape (E+1,).
        element_sizes (np.ndarray): Element diameters h_e, shape (E,).
        element_centroids (np.ndarray): Element centroids, shape (E, d).
        order (int): Order of the element rule.
        ref_dim (int): Dimension of the reference element (0 for a point
            cloud).
        body (Body | None): Elements the table was built from.
    """

    def __init__(self,
                 points: np.ndarray,
                 normals: np.ndarray | None,
                 weights: np.ndarray,
                 element_ids: np.ndarray,
                 ref_nodes: np.ndarray,
                 element_offsets: np.ndarray,
                 element_sizes: np.ndarray,
                 element_centroids: np.ndarray,
                 order: int,
                 ref_dim: int,
                 body: Body | None = None):
        self.points = _readonly(points, np.float64)
        if self.points.ndim != 2 or self.points.shape[1] not in (2, 3):
            raise ValueError("points must have shape (N, 2) or (N, 3).")
        N, d = self.points.shape
        self.normals = None if normals is None else _readonly(normals,
                                                              np.float64)
        if self.normals is not None and self.normals.shape != (N, d):
            raise ValueError("normals must have the same shape as points.")
        self.weights = _readonly(weights, np.float64)
        self.element_ids = _readonly(element_ids, np.int64)
        self.ref_nodes = _readonly(np.reshape(ref_nodes, (N, ref_dim)),
                                   np.float64)
        self.element_offsets = _readonly(element_offsets, np.int64)
        self.element_sizes = _readonly(element_sizes, np.float64)
        self.element_centroids = _readonly(element_centroids, np.float64)
        self.order = int(order)
        self.ref_dim = int(ref_dim)
        self.body = body

        if self.weights.shape != (N,) or self.element_ids.shape != (N,):
            raise ValueError("weights and element_ids must have shape (N,).")
        if np.any(np.diff(self.element_offsets) < 1):
            raise ValueError("Every element must own at least one point.")

        self.point_h = _readonly(self.element_sizes[self.element_ids],
                                 np.float64)

    @classmethod
    def from_points(cls,
                    points: np.ndarray,
                    weights: np.ndarray | None = None,
                    normals: np.ndarray | None = None) -> "Quadrature":
        """
        Wrap a bare point cloud as a table with one point per element.

        Useful as an evaluation target or for point sources; such a table
        carries no element geometry and cannot be corrected as a source.

        Args:
            points (np.ndarray): Coordinates, shape (N, d).
            weights (np.ndarray | None): Weights, defaults to ones.
            normals (np.ndarray | None): Optional unit normals, shape (N, d).

        Returns:
            Quadrature: The wrapped table.
        """
        points = np.atleast_2d(np.asarray(points, dtype=float))
        N = points.shape[0]
        if weights is None:
            weights = np.ones(N)
        return cls(points=points,
                   normals=normals,
                   weights=np.asarray(weights, dtype=float).reshape(N),
                   element_ids=np.arange(N),
                   ref_nodes=np.zeros((N, 0)),
                   element_offsets=np.arange(N + 1),
                   element_sizes=np.zeros(N),
                   element_centroids=points,
                   order=1,
                   ref_dim=0)

    @property
    def dim(self) -> int:
        return self.points.shape[1]

    @property
    def num_points(self) -> int:
        return self.points.shape[0]

    @property
    def num_elements(self) -> int:
        return self.element_offsets.shape[0] - 1

    @property
    def has_geometry(self) -> bool:
        return self.body is not None

    def __len__(self) -> int:
        return self.num_points

    def element_slice(self, e: int) -> slice:
        """Rows of the table that belong to element e."""
        return slice(int(self.element_offsets[e]),
                     int(self.element_offsets[e + 1]))

    def total_measure(self) -> float:
        """Sum of all weights (perimeter or area of the boundary)."""
        return float(np.sum(self.weights))

    def integrate(self, values: np.ndarray) -> np.ndarray:
        """
        Integrate samples given at the quadrature points.

        Args:
            values (np.ndarray): Array of shape (N, ...).

        Returns:
            np.ndarray: Integral, shape (...).
        """
        values = np.asarray(values)
        if values.shape[0] != self.num_points:
            raise ValueError(f"Expected {self.num_points} samples, "
                             f"got {values.shape[0]}.")
        return np.tensordot(self.weights, values, axes=(0, 0))

    def point(self, i: int) -> QuadraturePoint:
        normal = None if self.normals is None else self.normals[i]
        return QuadraturePoint(self.points[i], normal,
                               float(self.weights[i]),
                               int(self.element_ids[i]))

    def __repr__(self) -> str:
        return (f"Quadrature(dim={self.dim}, num_points={self.num_points}, "
                f"num_elements={self.num_elements}, order={self.order})")


def build_quadrature(body: Body, order: int) -> Quadrature:
    """
    Build the quadrature table of a body.

    Curve panels receive an ``order``-point Gauss-Legendre rule, flat
    triangles the collapsed tensor rule with ``order**2`` points.

    Args:
        body (Body): Ordered boundary elements.
        order (int): Order of the element rule.

    Returns:
        Quadrature: The table, points in element order.

    Raises:
        DegenerateElement: If an element has (numerically) zero measure.
    """
    if order < 1:
        raise ValueError("Quadrature order must be at least 1.")

    points, normals, weights, ids, refs = [], [], [], [], []
    offsets = [0]
    sizes = np.zeros(body.num_elements)
    centroids = np.zeros((body.num_elements, body.dim))

    for e, el in enumerate(body):
        measure = el.measure()
        scale = el.diameter()
        if not measure > _DEGENERATE_RTOL * scale ** el.ref_dim \
                or not np.isfinite(scale):
            raise DegenerateElement(e, measure)

        ref, w = el.reference_rule(order)
        y, n, jac = el.map(ref)

        points.append(y)
        normals.append(n)
        weights.append(w * jac)
        ids.append(np.full(len(w), e))
        refs.append(np.reshape(ref, (len(w), el.ref_dim)))
        offsets.append(offsets[-1] + len(w))
        sizes[e] = scale
        centroids[e] = el.centroid()

    table = Quadrature(points=np.vstack(points),
                       normals=np.vstack(normals),
                       weights=np.concatenate(weights),
                       element_ids=np.concatenate(ids),
                       ref_nodes=np.vstack(refs),
                       element_offsets=np.asarray(offsets),
                       element_sizes=sizes,
                       element_centroids=centroids,
                       order=order,
                       ref_dim=body.ref_dim,
                       body=body)
    logger.debug("Built %r (measure %.6g).", table, table.total_measure())
    return table
