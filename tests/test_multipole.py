import numpy as np
import pytest

from fast_BEM import LaplaceKernel, HelmholtzKernel


def _cluster(seed, num_sources=40, num_targets=30):
    rng = np.random.default_rng(seed)
    radius = 0.5 * np.sqrt(rng.uniform(0, 1, num_sources))
    angle = rng.uniform(0, 2 * np.pi, num_sources)
    center = np.array([0.2, -0.1])
    y = center + np.column_stack([radius * np.cos(angle),
                                  radius * np.sin(angle)])
    phi = rng.uniform(0, 2 * np.pi, num_targets)
    dist = rng.uniform(3.0, 5.0, num_targets)
    x = center + np.column_stack([dist * np.cos(phi), dist * np.sin(phi)])

    def unit(n):
        a = rng.uniform(0, 2 * np.pi, n)
        return np.column_stack([np.cos(a), np.sin(a)])

    weights = rng.uniform(0.5, 1.5, num_sources)
    return x, unit(num_targets), y, unit(num_sources), weights, center


def _check(kernel, seed, p):
    x, n_x, y, n_y, w, center = _cluster(seed)
    expansion = kernel.expansion
    V = expansion.moments(y, n_y, w, center, 0.5, p)
    U = expansion.evaluation(x, n_x, center, 0.5, p)
    assert V.shape == (expansion.num_terms(p), len(y))
    assert U.shape == (len(x), expansion.num_terms(p))

    exact = kernel.block(x, y, n_x, n_y) * w[None, :]
    err = np.linalg.norm(U @ V - exact) / np.linalg.norm(exact)
    assert err < 1e-10


@pytest.mark.parametrize("seed", [0, 1, 2])
@pytest.mark.parametrize("layer", ["single", "double", "adjoint-double"])
def test_laplace_expansion_matches_kernel(layer, seed):
    _check(LaplaceKernel(2, layer=layer), seed, p=30)


@pytest.mark.parametrize("seed", [0, 1, 2])
@pytest.mark.parametrize("layer", ["single", "double", "adjoint-double"])
def test_helmholtz_expansion_matches_kernel(layer, seed):
    _check(HelmholtzKernel(2.0, 2, layer=layer), seed, p=24)


def test_combined_layer_expansions():
    _check(LaplaceKernel(2, layer="combined", alpha=0.3, beta=-1.2), 4, p=30)
    _check(HelmholtzKernel(1.0, 2, layer="combined", alpha=-2.0j,
                           beta=1.0), 5, p=24)


def test_order_guess_grows_with_accuracy():
    expansion = LaplaceKernel(2).expansion
    assert expansion.order_guess(0.5, 1.0, 1e-12) > \
        expansion.order_guess(0.5, 1.0, 1e-4)
    helmholtz = HelmholtzKernel(10.0, 2).expansion
    assert helmholtz.order_guess(0.5, 2.0, 1e-8) > \
        helmholtz.order_guess(0.5, 0.1, 1e-8)
