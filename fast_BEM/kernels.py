import numpy as np
from scipy import special as sp

from fast_BEM.exceptions import SingularEvaluation

LAYERS = ("single", "double", "adjoint-double", "combined")


def r_vec(x: np.ndarray,
          y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute the vectors from source points y to target points x.

    Args:
        x (np.ndarray): Array of shape (Nt, d) with target points.
        y (np.ndarray): Array of shape (Ns, d) with source points.

    Returns:
        r_vec (np.ndarray): Array of shape (Nt, Ns, d) with x - y.
        r_norm (np.ndarray): Array of shape (Nt, Ns) with ||x - y||.
    """
    r_vec_ = x[:, None, :] - y[None, :, :]
    r_norm = np.sqrt(np.einsum('...i,...i->...', r_vec_, r_vec_))
    return r_vec_, r_norm


class Kernel:
    """
    Base class of the boundary integral kernels.

    A kernel is a closed-form free-space Green's function together with a
    layer that selects which derivative is integrated:

    - ``single``: G(x, y)
    - ``double``: ∂G/∂n_y
    - ``adjoint-double``: ∂G/∂n_x
    - ``combined``: alpha G + beta ∂G/∂n_y

    Kernels are immutable and safe to share between threads.
    """
    family = "kernel"

    def __init__(self,
                 dim: int,
                 layer: str = "single",
                 alpha: complex = 1.0,
                 beta: complex = 1.0):
        if dim not in (2, 3):
            raise ValueError(f"dim must be 2 or 3, got {dim}.")
        if layer not in LAYERS:
            raise ValueError(f"Unknown layer '{layer}'. Expected one of "
                             f"{LAYERS}.")
        self.dim = int(dim)
        self.layer = layer
        self.alpha = alpha
        self.beta = beta
        self._layer_fn = {"single": self._single,
                          "double": self._double,
                          "adjoint-double": self._adjoint,
                          "combined": self._combined}[layer]

    # -- descriptors ---------------------------------------------------------

    @property
    def value_shape(self) -> tuple[int, ...]:
        return ()

    @property
    def value_size(self) -> int:
        return int(np.prod(self.value_shape, dtype=int))

    @property
    def dtype(self) -> np.dtype:
        if self.layer == "combined" and (np.iscomplexobj(self.alpha) or
                                         np.iscomplexobj(self.beta)):
            return np.dtype(np.complex128)
        return np.dtype(np.float64)

    @property
    def needs_source_normals(self) -> bool:
        return self.layer in ("double", "combined")

    @property
    def needs_target_normals(self) -> bool:
        return self.layer == "adjoint-double"

    @property
    def expansion(self):
        """Far-field expansion of this kernel, or None if unavailable."""
        return None

    def _params(self) -> dict:
        return {"dim": self.dim}

    def with_layer(self,
                   layer: str,
                   alpha: complex | None = None,
                   beta: complex | None = None) -> "Kernel":
        """Same Green's function with a different layer."""
        return type(self)(layer=layer,
                          alpha=self.alpha if alpha is None else alpha,
                          beta=self.beta if beta is None else beta,
                          **self._params())

    # -- evaluation ----------------------------------------------------------

    def block(self,
              x: np.ndarray,
              y: np.ndarray,
              n_x: np.ndarray | None = None,
              n_y: np.ndarray | None = None,
              exclude: np.ndarray | None = None) -> np.ndarray:
        """
        Evaluate the layer kernel for all target/source pairs.

        Args:
            x (np.ndarray): Target points, shape (Nt, d).
            y (np.ndarray): Source points, shape (Ns, d).
            n_x (np.ndarray | None): Target normals, shape (Nt, d).
            n_y (np.ndarray | None): Source normals, shape (Ns, d).
            exclude (np.ndarray | None): (P, 2) index pairs returned as zero.

        Returns:
            np.ndarray: Kernel values, shape (Nt, Ns, *value_shape).

        Raises:
            SingularEvaluation: If a pair coincides and is not excluded.
        """
        x = np.asarray(x, dtype=float).reshape(-1, self.dim)
        y = np.asarray(y, dtype=float).reshape(-1, self.dim)
        if self.needs_source_normals and n_y is None:
            raise ValueError(f"{self.layer} layer needs source normals.")
        if self.needs_target_normals and n_x is None:
            raise ValueError(f"{self.layer} layer needs target normals.")

        d, r = r_vec(x, y)
        zero = r == 0.0
        mask = None
        if exclude is not None and len(exclude) > 0:
            exclude = np.asarray(exclude, dtype=np.int64).reshape(-1, 2)
            mask = np.zeros_like(zero)
            mask[exclude[:, 0], exclude[:, 1]] = True
            zero = zero & ~mask
        if np.any(zero):
            raise SingularEvaluation(np.argwhere(zero))
        if mask is not None:
            r = np.where(mask, 1.0, r)

        vals = self._layer_fn(d, r, n_x, n_y)
        if mask is not None:
            vals[mask] = 0.0
        return vals

    def evaluate(self,
                 x: np.ndarray,
                 y: np.ndarray) -> np.ndarray:
        """
        Green's function G(x, y) for a single pair.

        Raises:
            SingularEvaluation: If x == y.
        """
        d, r = r_vec(np.reshape(x, (1, self.dim)),
                     np.reshape(y, (1, self.dim)))
        if r[0, 0] == 0.0:
            raise SingularEvaluation(np.zeros((1, 2), dtype=np.int64))
        return self._single(d, r, None, None)[0, 0]

    def evaluate_derivative(self,
                            x: np.ndarray,
                            y: np.ndarray,
                            normal: np.ndarray) -> np.ndarray:
        """
        Normal derivative ∂G/∂n_y of the Green's function for one pair.

        Raises:
            SingularEvaluation: If x == y.
        """
        d, r = r_vec(np.reshape(x, (1, self.dim)),
                     np.reshape(y, (1, self.dim)))
        if r[0, 0] == 0.0:
            raise SingularEvaluation(np.zeros((1, 2), dtype=np.int64))
        return self._double(d, r, None,
                            np.reshape(normal, (1, self.dim)))[0, 0]

    def reference_scale(self, h: float) -> float:
        """
        Magnitude of the layer kernel at distances h, h/2 and h/4 with
        aligned normals. Used as an absolute scale for element integrals
        whose exact value is zero.
        """
        e = np.zeros(self.dim)
        e[0] = 1.0
        dist = float(h) * np.array([1.0, 0.5, 0.25])
        x = dist[:, None] * e[None, :]
        y = np.zeros((1, self.dim))
        n_x = np.tile(e, (3, 1))
        vals = self.block(x, y, n_x, e[None, :])
        return float(np.max(np.abs(vals)))

    # -- layers --------------------------------------------------------------

    def _single(self, d, r, n_x, n_y):
        raise NotImplementedError

    def _double(self, d, r, n_x, n_y):
        raise NotImplementedError

    def _adjoint(self, d, r, n_x, n_y):
        raise NotImplementedError

    def _combined(self, d, r, n_x, n_y):
        return self.alpha * self._single(d, r, n_x, n_y) + \
               self.beta * self._double(d, r, n_x, n_y)

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in self._params().items())
        return f"{type(self).__name__}({params}, layer='{self.layer}')"


class _ScalarKernel(Kernel):
    """
    Kernels of the form G(r): layers follow from dG/dr,

        ∂G/∂n_y = -dG/dr (r_hat · n_y)
        ∂G/∂n_x =  dG/dr (r_hat · n_x)
    """

    def _G(self, r):
        raise NotImplementedError

    def _dG_dr(self, r):
        raise NotImplementedError

    def _single(self, d, r, n_x, n_y):
        return self._G(r)

    def _double(self, d, r, n_x, n_y):
        rn = np.einsum('...i,...i->...', d, n_y[None, :, :]) / r
        return -self._dG_dr(r) * rn

    def _adjoint(self, d, r, n_x, n_y):
        rn = np.einsum('...i,...i->...', d, n_x[:, None, :]) / r
        return self._dG_dr(r) * rn


class LaplaceKernel(_ScalarKernel):
    """
    Laplace Green's function.

    2D: G = -1/(2π) log r,   3D: G = 1/(4π r).
    """
    family = "laplace"

    def _G(self, r):
        if self.dim == 2:
            return -np.log(r) / (2.0 * np.pi)
        return 1.0 / (4.0 * np.pi * r)

    def _dG_dr(self, r):
        if self.dim == 2:
            return -1.0 / (2.0 * np.pi * r)
        return -1.0 / (4.0 * np.pi * r**2)

    @property
    def expansion(self):
        if self.dim != 2:
            return None
        from fast_BEM.multipole import LaplaceExpansion2D
        return LaplaceExpansion2D(self)


class HelmholtzKernel(_ScalarKernel):
    """
    Helmholtz Green's function for the wavenumber k (complex valued).

    2D: G = i/4 H0(kr),   3D: G = e^{ikr}/(4π r).
    """
    family = "helmholtz"

    def __init__(self,
                 wavenumber: float,
                 dim: int,
                 layer: str = "single",
                 alpha: complex = 1.0,
                 beta: complex = 1.0):
        if wavenumber is None or not float(wavenumber) > 0.0:
            raise ValueError("Helmholtz kernels need a positive wavenumber.")
        self.k = float(wavenumber)
        super().__init__(dim, layer, alpha, beta)

    def _params(self) -> dict:
        return {"wavenumber": self.k, "dim": self.dim}

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.complex128)

    def _G(self, r):
        if self.dim == 2:
            return 0.25j * sp.hankel1(0, self.k * r)
        return np.exp(1j * self.k * r) / (4.0 * np.pi * r)

    def _dG_dr(self, r):
        if self.dim == 2:
            return -0.25j * self.k * sp.hankel1(1, self.k * r)
        return self._G(r) * (1j * self.k - 1.0 / r)

    @property
    def expansion(self):
        if self.dim != 2:
            return None
        from fast_BEM.multipole import HelmholtzExpansion2D
        return HelmholtzExpansion2D(self)


class StokesKernel(Kernel):
    """
    Stokes (creeping flow) kernels with viscosity mu, tensor valued.

    With d = x - y and r = |d|:

    3D Stokeslet  S_ij = 1/(8π mu) (δ_ij / r + d_i d_j / r^3)
    3D stresslet  D_ij = 3/(4π) d_i d_j (d · n_y) / r^5
    2D Stokeslet  S_ij = 1/(4π mu) (-δ_ij log r + d_i d_j / r^2)
    2D stresslet  D_ij = 1/π d_i d_j (d · n_y) / r^4

    The adjoint layer contracts with the target normal and flips the sign.
    """
    family = "stokes"

    def __init__(self,
                 viscosity: float,
                 dim: int,
                 layer: str = "single",
                 alpha: complex = 1.0,
                 beta: complex = 1.0):
        if viscosity is None or not float(viscosity) > 0.0:
            raise ValueError("Stokes kernels need a positive viscosity.")
        self.mu = float(viscosity)
        super().__init__(dim, layer, alpha, beta)

    def _params(self) -> dict:
        return {"viscosity": self.mu, "dim": self.dim}

    @property
    def value_shape(self) -> tuple[int, ...]:
        return (self.dim, self.dim)

    def _dd(self, d):
        return d[..., :, None] * d[..., None, :]

    def _single(self, d, r, n_x, n_y):
        eye = np.eye(self.dim)[None, None, :, :]
        if self.dim == 2:
            return (-np.log(r)[..., None, None] * eye +
                    self._dd(d) / (r**2)[..., None, None]) / \
                   (4.0 * np.pi * self.mu)
        return (eye / r[..., None, None] +
                self._dd(d) / (r**3)[..., None, None]) / \
               (8.0 * np.pi * self.mu)

    def _stresslet(self, d, r, dn):
        if self.dim == 2:
            return self._dd(d) * (dn / r**4)[..., None, None] / np.pi
        return 3.0 * self._dd(d) * (dn / r**5)[..., None, None] / \
               (4.0 * np.pi)

    def _double(self, d, r, n_x, n_y):
        dn = np.einsum('...i,...i->...', d, n_y[None, :, :])
        return self._stresslet(d, r, dn)

    def _adjoint(self, d, r, n_x, n_y):
        dn = np.einsum('...i,...i->...', d, n_x[:, None, :])
        return -self._stresslet(d, r, dn)
