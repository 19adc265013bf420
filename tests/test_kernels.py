import numpy as np
import pytest
from scipy.special import hankel1

from fast_BEM import (LaplaceKernel, HelmholtzKernel, StokesKernel,
                      SingularEvaluation)


def _scalar_kernels():
    return [LaplaceKernel(2), LaplaceKernel(3),
            HelmholtzKernel(3.0, 2), HelmholtzKernel(3.0, 3)]


def test_closed_forms():
    x2, y2 = np.array([2.0, 0.0]), np.zeros(2)
    x3, y3 = np.array([0.0, 2.0, 0.0]), np.zeros(3)
    assert np.isclose(LaplaceKernel(2).evaluate(x2, y2),
                      -np.log(2.0) / (2 * np.pi))
    assert np.isclose(LaplaceKernel(3).evaluate(x3, y3), 1.0 / (8 * np.pi))
    assert np.isclose(HelmholtzKernel(1.5, 2).evaluate(x2, y2),
                      0.25j * hankel1(0, 3.0))
    assert np.isclose(HelmholtzKernel(1.5, 3).evaluate(x3, y3),
                      np.exp(3j) / (8 * np.pi))


@pytest.mark.parametrize("kernel", _scalar_kernels(), ids=repr)
def test_normal_derivatives_match_finite_differences(kernel):
    rng = np.random.default_rng(0)
    d = kernel.dim
    x = rng.uniform(-1, 1, d) + 2.0
    y = rng.uniform(-1, 1, d)
    n = rng.normal(size=d)
    n /= np.linalg.norm(n)
    eps = 1e-6

    fd_y = (kernel.evaluate(x, y + eps * n) -
            kernel.evaluate(x, y - eps * n)) / (2 * eps)
    assert np.isclose(kernel.evaluate_derivative(x, y, n), fd_y, rtol=1e-6)

    adjoint = kernel.with_layer("adjoint-double")
    fd_x = (kernel.evaluate(x + eps * n, y) -
            kernel.evaluate(x - eps * n, y)) / (2 * eps)
    value = adjoint.block(x[None], y[None], n_x=n[None])[0, 0]
    assert np.isclose(value, fd_x, rtol=1e-6)


def test_combined_layer():
    single = LaplaceKernel(2)
    combined = LaplaceKernel(2, layer="combined", alpha=0.5, beta=2.0)
    x = np.array([[1.0, 2.0], [0.5, -1.0]])
    y = np.array([[0.0, 0.0], [0.1, 0.3], [-0.4, 0.2]])
    n_y = np.array([[1.0, 0.0], [0.0, 1.0], [0.6, 0.8]])
    expected = 0.5 * single.block(x, y) + \
        2.0 * single.with_layer("double").block(x, y, n_y=n_y)
    assert np.allclose(combined.block(x, y, n_y=n_y), expected)
    assert combined.dtype == np.float64
    assert LaplaceKernel(2, "combined", alpha=1j).dtype == np.complex128


def test_stokes_closed_forms_and_symmetry():
    mu = 2.0
    S3 = StokesKernel(mu, 3)
    x = np.array([[1.0, 0.0, 0.0]])
    y = np.zeros((1, 3))
    assert S3.value_shape == (3, 3)
    assert np.allclose(S3.block(x, y)[0, 0],
                       np.diag([2.0, 1.0, 1.0]) / (8 * np.pi * mu))

    D3 = S3.with_layer("double")
    n = np.array([[1.0, 0.0, 0.0]])
    expected = np.zeros((3, 3))
    expected[0, 0] = 3.0 / (4 * np.pi)
    assert np.allclose(D3.block(x, y, n_y=n)[0, 0], expected)
    assert np.allclose(D3.evaluate_derivative(x[0], y[0], n[0]), expected)
    assert np.allclose(S3.with_layer("adjoint-double").block(x, y, n_x=n),
                       -D3.block(x, y, n_y=n))

    S2 = StokesKernel(mu, 2)
    rng = np.random.default_rng(1)
    pts = rng.uniform(-1, 1, (5, 2))
    block = S2.block(pts + 3.0, pts)
    assert block.shape == (5, 5, 2, 2)
    assert np.allclose(block, np.swapaxes(block, 2, 3))


def test_coincident_points_raise():
    kernel = LaplaceKernel(3)
    x = np.array([0.1, 0.2, 0.3])
    with pytest.raises(SingularEvaluation):
        kernel.evaluate(x, x)
    with pytest.raises(SingularEvaluation):
        kernel.evaluate_derivative(x, x, np.array([0.0, 0.0, 1.0]))

    pts = np.array([[0.0, 0, 0], [1.0, 0, 0], [0.0, 2, 0]])
    with pytest.raises(SingularEvaluation) as info:
        kernel.block(pts, pts)
    assert np.array_equal(info.value.pairs, [[0, 0], [1, 1], [2, 2]])

    values = kernel.block(pts, pts, exclude=info.value.pairs)
    assert np.all(np.isfinite(values))
    assert np.allclose(np.diag(values), 0.0)
    assert np.isclose(values[0, 1], 1.0 / (4 * np.pi))


def test_expansion_availability():
    assert LaplaceKernel(2).expansion is not None
    assert HelmholtzKernel(1.0, 2, layer="double").expansion is not None
    assert LaplaceKernel(3).expansion is None
    assert StokesKernel(1.0, 2).expansion is None


def test_reference_scale_is_positive():
    for kernel in _scalar_kernels():
        for layer in ("single", "double", "adjoint-double"):
            assert kernel.with_layer(layer).reference_scale(0.1) > 0.0


def test_invalid_kernels():
    with pytest.raises(ValueError):
        LaplaceKernel(4)
    with pytest.raises(ValueError):
        LaplaceKernel(2, layer="triple")
    with pytest.raises(ValueError):
        HelmholtzKernel(0.0, 2)
    with pytest.raises(ValueError):
        StokesKernel(-1.0, 3)
    with pytest.raises(ValueError):
        LaplaceKernel(2, layer="double").block(np.ones((1, 2)),
                                               np.zeros((1, 2)))
