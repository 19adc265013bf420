import logging
import numpy as np

from scipy.sparse.linalg import gmres

from fast_BEM.operator import BoundaryOperator

logger = logging.getLogger(__name__)


class BIESolver:
    """
    Solver for second-kind boundary integral equations

        (shift I + A) σ = f,

    e.g. shift = -1/2 with A the double layer for the interior Dirichlet
    problem, or A the adjoint double layer for the exterior Neumann
    problem.

    Attributes:
        operator (BoundaryOperator): Assembled operator A.
        shift (complex): Jump term.
        info (int | None): Exit code of the last iterative solve.
        iterations (int): Number of GMRES iterations of the last solve.
    """

    def __init__(self,
                 operator: BoundaryOperator,
                 shift: complex = 0.0):
        """
        Args:
            operator (BoundaryOperator): Assembled square operator.
            shift (complex): Multiple of the identity added to the operator.
        """
        if operator.shape[0] != operator.shape[1]:
            raise ValueError("BIESolver needs a square operator.")
        self.operator = operator
        self.shift = shift
        self.info = None
        self.iterations = 0

    def _rhs(self, rhs: np.ndarray) -> np.ndarray:
        rhs = np.asarray(rhs)
        if rhs.shape != (self.operator.shape[0],):
            raise ValueError(f"rhs must have shape ({self.operator.shape[0]},),"
                             f" got {rhs.shape}.")
        return rhs

    def solve_direct(self, rhs: np.ndarray) -> np.ndarray:
        """
        Solve with a dense LU factorization of the materialized operator.

        Args:
            rhs (np.ndarray): Right-hand side, shape (N,).

        Returns:
            np.ndarray: Solution σ, shape (N,).
        """
        rhs = self._rhs(rhs)
        A = self.operator.materialize()
        A_sys = A + self.shift * np.eye(A.shape[0])
        return np.linalg.solve(A_sys, rhs)

    def solve_iterative(self,
                        rhs: np.ndarray,
                        rtol: float = 1e-10,
                        restart: int | None = None,
                        maxiter: int | None = None,
                        x0: np.ndarray | None = None) -> np.ndarray:
        """
        Solve with restarted GMRES on the compressed operator.

        Args:
            rhs (np.ndarray): Right-hand side, shape (N,).
            rtol (float): Relative residual tolerance.
            restart (int | None): GMRES restart length.
            maxiter (int | None): Maximum number of restart cycles.
            x0 (np.ndarray | None): Initial guess.

        Returns:
            np.ndarray: Solution σ, shape (N,). ``self.info`` holds the
                GMRES exit code (0 on success).
        """
        rhs = self._rhs(rhs)
        A = self.operator.as_linear_operator(self.shift)
        self.iterations = 0

        def count(_):
            self.iterations += 1

        sol, info = gmres(A, rhs, x0=x0, rtol=rtol, restart=restart,
                          maxiter=maxiter, callback=count,
                          callback_type="pr_norm")
        self.info = info
        if info > 0:
            logger.warning("GMRES did not converge to rtol=%.1e within %d "
                           "iterations.", rtol, info)
        elif info < 0:
            raise ValueError(f"GMRES failed with illegal input ({info}).")
        else:
            logger.info("GMRES converged in %d iterations.", self.iterations)
        return sol

    def solve(self,
              rhs: np.ndarray,
              method: str = "iterative",
              **kwargs) -> np.ndarray:
        """Dispatch to :meth:`solve_iterative` or :meth:`solve_direct`."""
        if method == "iterative":
            return self.solve_iterative(rhs, **kwargs)
        if method == "direct":
            return self.solve_direct(rhs)
        raise ValueError("method must be 'iterative' or 'direct'")

    def __repr__(self) -> str:
        return (f"BIESolver(shape={self.operator.shape}, "
                f"shift={self.shift!r})")
