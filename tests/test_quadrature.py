import numpy as np
import pytest

from fast_BEM.quadrature import (gauss_legendre,
                                 subdivided_gauss,
                                 graded_split_rule,
                                 duffy_rule,
                                 subdivide_triangle_quad,
                                 vertex_split_rule,
                                 geometric_rule,
                                 geometric_split_rule,
                                 geometric_vertex_split_rule,
                                 interpolation_matrix)


def _log_integral(t0):
    """∫_{-1}^{1} -log|t - t0| / (2π) dt."""
    return -((1 + t0) * np.log(1 + t0) + (1 - t0) * np.log(1 - t0) - 2.0) \
        / (2.0 * np.pi)


def test_gauss_legendre_weights_and_copies():
    x, w = gauss_legendre(6)
    assert np.isclose(w.sum(), 2.0)
    x[0] = 100.0
    x2, _ = gauss_legendre(6)
    assert x2[0] != 100.0


def test_subdivided_gauss_integrates_polynomials():
    t, w = subdivided_gauss(3, 2, a=0.0, b=2.0)
    assert len(t) == 12
    assert np.isclose(np.sum(w * t**4), 2.0**5 / 5.0)


@pytest.mark.parametrize("t0", [0.3, -0.77])
def test_graded_rule_converges_for_log_singularity(t0):
    exact = _log_integral(t0)
    errors = []
    for n in (2, 4, 8, 16):
        t, w = graded_split_rule(t0, n, grading=3)
        errors.append(abs(np.sum(w * -np.log(np.abs(t - t0)) / (2 * np.pi))
                          - exact))
    assert all(e2 < e1 for e1, e2 in zip(errors, errors[1:]))
    assert errors[-1] < 1e-5


def test_graded_rule_at_interval_end():
    t, w = graded_split_rule(-1.0, 8)
    assert np.isclose(w.sum(), 2.0)
    assert np.all(t > -1.0)


def test_duffy_rule_area_and_monomials():
    pts, w = duffy_rule(6)
    assert np.isclose(w.sum(), 0.5)
    # ∫_T xi^2 eta dA = 2! 1! / 5! = 1/60
    assert np.isclose(np.sum(w * pts[:, 0]**2 * pts[:, 1]), 1.0 / 60.0)


def test_subdivide_triangle_quad_preserves_integrals():
    pts, w = subdivide_triangle_quad(*duffy_rule(4), levels=2)
    assert len(w) == 16 * 16
    assert np.isclose(w.sum(), 0.5)
    assert np.isclose(np.sum(w * pts[:, 0] * pts[:, 1]), 1.0 / 24.0)


def test_vertex_split_rule_integrates_inverse_distance():
    star = np.array([0.25, 0.25])
    values = []
    for n in (4, 8, 16):
        pts, w = vertex_split_rule(star, n)
        assert np.isclose(w.sum(), 0.5)
        r = np.linalg.norm(pts - star, axis=1)
        values.append(np.sum(w / r))
    # the Duffy Jacobian cancels 1/r: the sequence settles quickly
    assert abs(values[2] - values[1]) < 0.1 * abs(values[1] - values[0]) + \
        1e-12


def test_vertex_split_rule_drops_degenerate_pieces():
    pts, w = vertex_split_rule(np.array([0.0, 0.0]), 4)
    assert len(w) == 16
    assert np.isclose(w.sum(), 0.5)


def test_interpolation_matrix_reproduces_nodes_and_polynomials():
    nodes, _ = gauss_legendre(5)
    L = interpolation_matrix(1, 5, nodes)
    assert np.allclose(L, np.eye(5), atol=1e-12)

    pts, _ = duffy_rule(4)
    L2 = interpolation_matrix(2, 4, pts)
    assert L2.shape == (16, 16)
    assert np.allclose(L2.sum(axis=1), 1.0)

    # polynomials of total degree 3 are reproduced everywhere, also at the
    # collapsed vertex
    samples = np.array([[0.1, 0.2], [0.6, 0.3], [0.0, 0.0], [1.0, 0.0]])

    def f(p):
        return 1.0 + p[:, 0] - 2.0 * p[:, 1] + p[:, 0] * p[:, 1] + \
            p[:, 0]**3 - p[:, 1]**2 * p[:, 0]

    assert np.allclose(L2 @ f(pts), f(pts))
    L = interpolation_matrix(2, 4, samples)
    assert np.allclose(L @ f(pts), f(samples))


def test_triangle_interpolant_is_smooth_at_the_collapsed_vertex():
    pts, _ = duffy_rule(5)
    values = np.exp(pts[:, 0] - 0.5 * pts[:, 1])
    eps = 1e-9
    around = np.array([[eps, 0.0], [0.0, eps], [eps, eps]])
    at_vertex = interpolation_matrix(2, 5, np.zeros((1, 2))) @ values
    near = interpolation_matrix(2, 5, around) @ values
    assert np.allclose(near, at_vertex, atol=1e-7)
    assert abs(at_vertex[0] - 1.0) < 1e-2


def test_interpolation_matrix_rejects_bad_dimension():
    with pytest.raises(ValueError):
        interpolation_matrix(3, 2, np.zeros((1, 3)))


def test_geometric_rule_layers():
    s, w = geometric_rule(4, 1e-3)
    assert np.isclose(w.sum(), 1.0)
    # ceil(log(1e-3) / log(0.15)) = 4 layers below the full interval
    assert len(s) == 4 * 5
    assert s.min() < 1e-3 * 0.15
    s, w = geometric_rule(4, 2.0)
    assert len(s) == 4


@pytest.mark.parametrize("depth", [1e-1, 1e-3, 1e-6])
def test_geometric_split_rule_resolves_close_sources(depth):
    t0 = 0.3
    # ∫_{-1}^{1} log((t - t0)^2 + δ^2) dt in closed form
    def primitive(u):
        return u * np.log(u**2 + depth**2) - 2.0 * u + \
            2.0 * depth * np.arctan(u / depth)
    exact = primitive(1.0 - t0) - primitive(-1.0 - t0)
    t, w = geometric_split_rule(t0, 16, (depth / 1.3, depth / 0.7))
    approx = np.sum(w * np.log((t - t0)**2 + depth**2))
    assert abs(approx - exact) < 1e-9 * abs(exact)


def test_geometric_vertex_split_rule_resolves_close_sources():
    p = np.array([0.3, 0.2])
    depth = 1e-3
    values = []
    for n in (8, 16, 32):
        pts, w = geometric_vertex_split_rule(p, n, (depth,) * 3)
        assert np.isclose(w.sum(), 0.5)
        r2 = np.sum((pts - p)**2, axis=1) + depth**2
        values.append(np.sum(w * depth / r2**1.5))
    assert abs(values[2] - values[1]) < 1e-4 * abs(values[2])
    # nearly the full half space solid angle seen from just above p
    assert abs(values[2] - 2.0 * np.pi) < 0.1
