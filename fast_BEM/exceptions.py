"""
Error taxonomy for boundary operator assembly.
"""

import numpy as np


class BEMError(Exception):
    """Base class for all assembly and evaluation errors."""


class DegenerateElement(BEMError):
    """
    Raised when an element has a zero-measure parametrization.

    Attributes:
        element (int): Index of the offending element.
        measure (float): Measure (length/area) found for the element.
    """
    def __init__(self, element: int, measure: float):
        self.element = int(element)
        self.measure = float(measure)
        super().__init__(f"Element {self.element} is degenerate "
                         f"(measure {self.measure:.3e}).")


class SingularEvaluation(BEMError):
    """
    Signal raised by a kernel evaluated at coincident points.

    Never leaves the package: assembly routes the flagged pairs to the
    near-field corrector.

    Attributes:
        pairs (np.ndarray): Array of shape (P, 2) with the (target, source)
            index pairs that coincide.
    """
    def __init__(self, pairs: np.ndarray | None = None):
        if pairs is None:
            pairs = np.zeros((0, 2), dtype=np.int64)
        self.pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
        super().__init__(f"Kernel evaluated at {len(self.pairs)} coincident "
                         "point pair(s).")


class CorrectionDivergence(BEMError):
    """
    Raised when a singular or near-singular element integral does not
    converge within the allowed number of refinement levels.

    Attributes:
        target (int): Target point index.
        element (int): Source element index.
        error (float): Last estimated error.
        tolerance (float): Requested tolerance.
        levels (int): Number of refinement levels attempted.
    """
    def __init__(self,
                 target: int,
                 element: int,
                 error: float,
                 tolerance: float,
                 levels: int):
        self.target = int(target)
        self.element = int(element)
        self.error = float(error)
        self.tolerance = float(tolerance)
        self.levels = int(levels)
        super().__init__(f"Correction for target {self.target} on element "
                         f"{self.element} did not converge after "
                         f"{self.levels} levels (error {self.error:.3e} > "
                         f"tolerance {self.tolerance:.3e}).")


class CompressionAccuracyUnmet(BEMError):
    """
    Raised when a far-field block cannot reach the tolerance within its
    rank or expansion-order budget.

    Attributes:
        block (tuple[int, int]): (target cluster, source cluster) node ids.
        error (float): Best error estimate reached.
        tolerance (float): Requested tolerance.
        budget (int): Rank or expansion order budget that was exhausted.
    """
    def __init__(self,
                 block: tuple[int, int],
                 error: float,
                 tolerance: float,
                 budget: int):
        self.block = (int(block[0]), int(block[1]))
        self.error = float(error)
        self.tolerance = float(tolerance)
        self.budget = int(budget)
        super().__init__(f"Block {self.block} reached error {self.error:.3e} "
                         f"> tolerance {self.tolerance:.3e} with budget "
                         f"{self.budget}.")


class CompressionAccuracyWarning(UserWarning):
    """Emitted when a far-field block falls back to dense evaluation."""


class EvaluationNearSingularity(BEMError):
    """
    Raised by the potential evaluator for evaluation points that coincide
    with, or lie too close to, the source surface.

    Attributes:
        indices (np.ndarray): Indices of the offending evaluation points.
    """
    def __init__(self, indices: np.ndarray):
        self.indices = np.asarray(indices, dtype=np.int64)
        shown = ", ".join(str(i) for i in self.indices[:10])
        more = "..." if len(self.indices) > 10 else ""
        super().__init__(f"{len(self.indices)} evaluation point(s) too close "
                         f"to the boundary: [{shown}{more}]")
