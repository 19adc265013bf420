import logging
import numpy as np

logger = logging.getLogger(__name__)


class ClusterTree:
    """
    Binary cluster tree over a point set, stored as an arena of arrays.

    Node k covers the points ``perm[start[k]:stop[k]]``; children are
    ``left[k]`` and ``right[k]`` (-1 for leaves). The root is node 0.

    Attributes:
        perm (np.ndarray): Tree ordering of the point indices, shape (N,).
        start, stop (np.ndarray): Slice bounds in tree ordering.
        left, right, parent (np.ndarray): Node links (-1 if absent).
        level (np.ndarray): Depth of every node.
        center (np.ndarray): Bounding-box centers, shape (M, d).
        radius (np.ndarray): Radius of the bounding ball about the center.
        bbox_min, bbox_max (np.ndarray): Bounding boxes, shape (M, d).
        h_max (np.ndarray): Largest element size of the node's points.
    """

    def __init__(self,
                 points: np.ndarray,
                 point_h: np.ndarray | None = None,
                 leaf_size: int = 32):
        """
        Args:
            points (np.ndarray): Array of shape (N, d).
            point_h (np.ndarray | None): Element size of every point.
            leaf_size (int): Maximum number of points per leaf.
        """
        points = np.asarray(points, dtype=float)
        N = points.shape[0]
        if leaf_size < 1:
            raise ValueError("leaf_size must be at least 1.")
        if point_h is None:
            point_h = np.zeros(N)
        self.leaf_size = int(leaf_size)
        self.num_points = N
        self.perm = np.arange(N)

        start, stop, left, right, parent, level = [], [], [], [], [], []

        def new_node(s, e, par, lev):
            start.append(s)
            stop.append(e)
            left.append(-1)
            right.append(-1)
            parent.append(par)
            level.append(lev)
            return len(start) - 1

        stack = [new_node(0, N, -1, 0)]
        while stack:
            k = stack.pop()
            s, e = start[k], stop[k]
            if e - s <= self.leaf_size:
                continue
            idx = self.perm[s:e]
            pts = points[idx]
            extent = pts.max(axis=0) - pts.min(axis=0)
            axis = int(np.argmax(extent))
            if extent[axis] <= 0.0:
                continue
            order = np.argsort(pts[:, axis], kind="stable")
            self.perm[s:e] = idx[order]
            mid = s + (e - s) // 2
            left[k] = new_node(s, mid, k, level[k] + 1)
            right[k] = new_node(mid, e, k, level[k] + 1)
            stack.extend([right[k], left[k]])

        self.start = np.asarray(start, dtype=np.int64)
        self.stop = np.asarray(stop, dtype=np.int64)
        self.left = np.asarray(left, dtype=np.int64)
        self.right = np.asarray(right, dtype=np.int64)
        self.parent = np.asarray(parent, dtype=np.int64)
        self.level = np.asarray(level, dtype=np.int64)

        M = len(start)
        d = points.shape[1]
        self.bbox_min = np.zeros((M, d))
        self.bbox_max = np.zeros((M, d))
        self.center = np.zeros((M, d))
        self.radius = np.zeros(M)
        self.h_max = np.zeros(M)
        for k in range(M):
            idx = self.perm[self.start[k]:self.stop[k]]
            pts = points[idx]
            self.bbox_min[k] = pts.min(axis=0)
            self.bbox_max[k] = pts.max(axis=0)
            self.center[k] = 0.5 * (self.bbox_min[k] + self.bbox_max[k])
            self.radius[k] = np.max(np.linalg.norm(pts - self.center[k],
                                                   axis=1))
            self.h_max[k] = np.max(point_h[idx])

        self.inverse = np.empty(N, dtype=np.int64)
        self.inverse[self.perm] = np.arange(N)

    @property
    def num_nodes(self) -> int:
        return self.start.shape[0]

    @property
    def depth(self) -> int:
        return int(self.level.max())

    def is_leaf(self, k: int) -> bool:
        return self.left[k] < 0

    def size(self, k: int) -> int:
        return int(self.stop[k] - self.start[k])

    def indices(self, k: int) -> np.ndarray:
        """Original point indices covered by node k."""
        return self.perm[self.start[k]:self.stop[k]]

    def leaves(self) -> np.ndarray:
        return np.nonzero(self.left < 0)[0]

    def __repr__(self) -> str:
        return (f"ClusterTree(num_points={self.num_points}, "
                f"num_nodes={self.num_nodes}, depth={self.depth})")


def admissible(target_tree: ClusterTree,
               source_tree: ClusterTree,
               t: int,
               s: int,
               eta: float,
               near_factor: float) -> bool:
    """
    Admissibility of the cluster pair (t, s).

    The pair may be compressed when the clusters are separated,

        max(r_t, r_s) <= eta * dist,  dist = |c_t - c_s| - r_t - r_s,

    and dist exceeds the reach of the near-field corrections,
    (near_factor + 1) * h_max, of both clusters.
    """
    gap = np.linalg.norm(target_tree.center[t] - source_tree.center[s])
    dist = gap - target_tree.radius[t] - source_tree.radius[s]
    if dist <= 0.0:
        return False
    reach = (near_factor + 1.0) * max(target_tree.h_max[t],
                                      source_tree.h_max[s])
    if dist <= reach:
        return False
    return max(target_tree.radius[t], source_tree.radius[s]) <= eta * dist


def block_partition(target_tree: ClusterTree,
                    source_tree: ClusterTree,
                    eta: float,
                    near_factor: float) -> tuple[list[tuple[int, int]],
                                                 list[tuple[int, int]]]:
    """
    Split the (target, source) index space into admissible (far) and
    inadmissible leaf (dense) cluster pairs.

    Returns:
        far (list[tuple[int, int]]): Admissible node pairs.
        dense (list[tuple[int, int]]): Inadmissible pairs of leaves.
    """
    far, dense = [], []
    stack = [(0, 0)]
    while stack:
        t, s = stack.pop()
        if admissible(target_tree, source_tree, t, s, eta, near_factor):
            far.append((t, s))
            continue
        t_leaf = target_tree.is_leaf(t)
        s_leaf = source_tree.is_leaf(s)
        if t_leaf and s_leaf:
            dense.append((t, s))
        elif t_leaf:
            stack.extend([(t, source_tree.right[s]), (t, source_tree.left[s])])
        elif s_leaf:
            stack.extend([(target_tree.right[t], s), (target_tree.left[t], s)])
        else:
            for tc in (target_tree.right[t], target_tree.left[t]):
                for sc in (source_tree.right[s], source_tree.left[s]):
                    stack.append((int(tc), int(sc)))
    far = [(int(t), int(s)) for t, s in far]
    dense = [(int(t), int(s)) for t, s in dense]
    logger.debug("Block partition: %d far, %d dense pairs.",
                 len(far), len(dense))
    return far, dense
