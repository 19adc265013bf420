"""
Fast assembly of boundary integral operators (Laplace, Helmholtz, Stokes)
"""

__version__ = "0.1.0"
from .config import CompressionOptions, CorrectionOptions
from .exceptions import (BEMError,
                         DegenerateElement,
                         SingularEvaluation,
                         CorrectionDivergence,
                         CompressionAccuracyUnmet,
                         CompressionAccuracyWarning,
                         EvaluationNearSingularity)
from .geometry import (Body, CurvePanel, FlatTriangle,
                       circle, ellipse, segment, box_mesh, sphere_mesh)
from .table import Quadrature, QuadraturePoint, build_quadrature
from .kernels import LaplaceKernel, HelmholtzKernel, StokesKernel
from .near_field import CorrectionSet, NearFieldCorrector
from .compression import FarFieldCompressor
from .operator import BoundaryOperator, OperatorState
from .potential import PotentialEvaluator
from .solve import BIESolver

__all__ = ["CompressionOptions", "CorrectionOptions",
           "BEMError", "DegenerateElement", "SingularEvaluation",
           "CorrectionDivergence", "CompressionAccuracyUnmet",
           "CompressionAccuracyWarning", "EvaluationNearSingularity",
           "Body", "CurvePanel", "FlatTriangle",
           "circle", "ellipse", "segment", "box_mesh", "sphere_mesh",
           "Quadrature", "QuadraturePoint", "build_quadrature",
           "LaplaceKernel", "HelmholtzKernel", "StokesKernel",
           "CorrectionSet", "NearFieldCorrector", "FarFieldCompressor",
           "BoundaryOperator", "OperatorState",
           "PotentialEvaluator", "BIESolver"]
