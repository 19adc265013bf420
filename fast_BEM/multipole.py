"""
Truncated far-field expansions of the 2D scalar kernels.

An expansion about a source cluster center c factorizes the weighted kernel
block K(x_i, y_j) w_j ≈ U @ V, where

- V (moments) depends only on the source cluster and the order p, and is
  shared by every block with the same source cluster,
- U (evaluation) depends on the targets and the source cluster center.

Both matrices follow the layer of the kernel; constants and quadrature
weights are folded into V.
"""
import numpy as np
from scipy import special as sp


def _as_complex(points: np.ndarray) -> np.ndarray:
    return points[:, 0] + 1j * points[:, 1]


class LaplaceExpansion2D:
    """
    Multipole expansion of the 2D Laplace kernels in complex notation.

    With z = x, w = y as complex numbers and scale rho,

        log(z - w) = sum_k t_k(z) s_k(w),
        t_0 = log(z - c),  t_k = (rho / (z - c))^k,
        s_0 = 1,           s_k = -1/k ((w - c) / rho)^k,

    and G = -1/(2π) Re log(z - w). Real kernels are factorized as
    Re(T S) = [Re T, -Im T] @ [Re S; Im S].
    """
    min_order = 1

    def __init__(self, kernel):
        self.kernel = kernel
        self.layer = kernel.layer
        self.dtype = kernel.dtype

    def order_guess(self,
                    ratio: float,
                    radius: float,
                    tolerance: float) -> int:
        """Order at which ratio**p drops below the tolerance."""
        ratio = min(max(ratio, 1e-3), 0.99)
        return max(self.min_order,
                   int(np.ceil(np.log(tolerance) / np.log(ratio))) + 1)

    def num_terms(self, p: int) -> int:
        return 2 * (p + 1)

    def _source_terms(self, y, n_y, center, scale, p):
        w = (_as_complex(y) - complex(*center)) / scale
        k = np.arange(p + 1)
        powers = w[None, :] ** k[:, None]
        S = np.zeros((p + 1, len(w)), dtype=complex)
        S[0] = 1.0
        S[1:] = -powers[1:] / k[1:, None]
        if n_y is None:
            return S, None
        nu = _as_complex(n_y)
        Dn = np.zeros_like(S)
        Dn[1:] = nu[None, :] * powers[:-1] / scale
        return S, Dn

    def moments(self,
                y: np.ndarray,
                n_y: np.ndarray | None,
                weights: np.ndarray,
                center: np.ndarray,
                scale: float,
                p: int) -> np.ndarray:
        """
        Source moment matrix V, shape (2(p+1), Ns).
        """
        S, Dn = self._source_terms(y, n_y, center, scale, p)
        coeff = {"single": (-1.0 / (2.0 * np.pi), 0.0),
                 "adjoint-double": (-1.0 / (2.0 * np.pi), 0.0),
                 "double": (0.0, 1.0 / (2.0 * np.pi)),
                 "combined": (-self.kernel.alpha / (2.0 * np.pi),
                              self.kernel.beta / (2.0 * np.pi))}[self.layer]
        V = np.vstack([S.real, S.imag]) * coeff[0]
        if Dn is not None and coeff[1] != 0.0:
            V = V + np.vstack([Dn.real, Dn.imag]) * coeff[1]
        return V * weights[None, :]

    def evaluation(self,
                   x: np.ndarray,
                   n_x: np.ndarray | None,
                   center: np.ndarray,
                   scale: float,
                   p: int) -> np.ndarray:
        """
        Target evaluation matrix U, shape (Nt, 2(p+1)).
        """
        zc = _as_complex(x) - complex(*center)
        q = scale / zc
        k = np.arange(p + 1)
        if self.layer == "adjoint-double":
            nu = _as_complex(n_x)
            T = -(k[None, :] / scale) * q[:, None] ** (k[None, :] + 1)
            T[:, 0] = q / scale
            T = T * nu[:, None]
        else:
            T = q[:, None] ** k[None, :]
            T[:, 0] = np.log(zc)
        return np.hstack([T.real, -T.imag])


class HelmholtzExpansion2D:
    """
    Graf addition theorem expansion of the 2D Helmholtz kernels,

        H0(k|x - y|) = sum_{n=-p}^{p} H_n(k rho_x) e^{i n theta_x}
                                     J_n(k rho_y) e^{-i n theta_y},

    with polar coordinates (rho, theta) taken about the source center and
    rho_y < rho_x.
    """
    min_order = 2

    def __init__(self, kernel):
        self.kernel = kernel
        self.layer = kernel.layer
        self.k = kernel.k
        self.dtype = kernel.dtype

    def order_guess(self,
                    ratio: float,
                    radius: float,
                    tolerance: float) -> int:
        ratio = min(max(ratio, 1e-3), 0.99)
        p = np.log(tolerance) / np.log(ratio)
        return max(self.min_order, int(np.ceil(p + self.k * radius)) + 1)

    def num_terms(self, p: int) -> int:
        return 2 * p + 1

    @staticmethod
    def _polar(points, center):
        d = points - center[None, :]
        rho = np.hypot(d[:, 0], d[:, 1])
        theta = np.arctan2(d[:, 1], d[:, 0])
        return d, rho, theta

    @staticmethod
    def _frame(theta):
        rho_hat = np.column_stack([np.cos(theta), np.sin(theta)])
        theta_hat = np.column_stack([-np.sin(theta), np.cos(theta)])
        return rho_hat, theta_hat

    def _source_terms(self, y, n_y, center, p):
        _, rho, theta = self._polar(y, center)
        n = np.arange(-p, p + 1)
        kr = self.k * rho[None, :]
        phase = np.exp(-1j * n[:, None] * theta[None, :])
        S = sp.jv(n[:, None], kr) * phase
        if n_y is None:
            return S, None
        rho_hat, theta_hat = self._frame(theta)
        # J_n(k rho)/rho = k (J_{n-1} + J_{n+1}) / (2n), finite at rho = 0.
        safe_n = np.where(n == 0, 1, n)[:, None]
        j_over_rho = self.k * (sp.jv(n[:, None] - 1, kr) +
                               sp.jv(n[:, None] + 1, kr)) / (2.0 * safe_n)
        j_over_rho = np.where(n[:, None] == 0, 0.0, j_over_rho)
        radial = self.k * sp.jvp(n[:, None], kr)
        ny_rho = np.einsum('pi,pi->p', n_y, rho_hat)[None, :]
        ny_theta = np.einsum('pi,pi->p', n_y, theta_hat)[None, :]
        Dn = phase * (radial * ny_rho -
                      1j * n[:, None] * j_over_rho * ny_theta)
        return S, Dn

    def moments(self,
                y: np.ndarray,
                n_y: np.ndarray | None,
                weights: np.ndarray,
                center: np.ndarray,
                scale: float,
                p: int) -> np.ndarray:
        """Source moment matrix V, shape (2p+1, Ns)."""
        S, Dn = self._source_terms(y, n_y, center, p)
        if self.layer in ("single", "adjoint-double"):
            V = S
        elif self.layer == "double":
            V = Dn
        else:
            V = self.kernel.alpha * S + self.kernel.beta * Dn
        return 0.25j * V * weights[None, :]

    def evaluation(self,
                   x: np.ndarray,
                   n_x: np.ndarray | None,
                   center: np.ndarray,
                   scale: float,
                   p: int) -> np.ndarray:
        """Target evaluation matrix U, shape (Nt, 2p+1)."""
        _, rho, theta = self._polar(x, center)
        n = np.arange(-p, p + 1)
        kr = self.k * rho[:, None]
        phase = np.exp(1j * n[None, :] * theta[:, None])
        if self.layer != "adjoint-double":
            return sp.hankel1(n[None, :], kr) * phase
        rho_hat, theta_hat = self._frame(theta)
        nx_rho = np.einsum('pi,pi->p', n_x, rho_hat)[:, None]
        nx_theta = np.einsum('pi,pi->p', n_x, theta_hat)[:, None]
        radial = self.k * sp.h1vp(n[None, :], kr)
        angular = 1j * n[None, :] * sp.hankel1(n[None, :], kr) / rho[:, None]
        return phase * (radial * nx_rho + angular * nx_theta)
