import numpy as np
import pytest

from fast_BEM import (BoundaryOperator, BIESolver, OperatorState,
                      LaplaceKernel, HelmholtzKernel, StokesKernel,
                      Quadrature, CompressionOptions, CorrectionOptions,
                      CorrectionDivergence, CompressionAccuracyUnmet,
                      CompressionAccuracyWarning, PotentialEvaluator,
                      build_quadrature, circle, segment, sphere_mesh)
from fast_BEM.integrators import ElementIntegrator


def _circle(num_panels=32, order=8, radius=1.0):
    return build_quadrature(circle(radius, num_panels), order=order)


def _compression(method="none", **kwargs):
    return dict(method=method, tolerance=1e-10, **kwargs)


def _correction(method="density-interpolation", order=8, **kwargs):
    options = dict(method=method, order=order, tolerance=1e-10)
    options.update(kwargs)
    return options


@pytest.mark.parametrize("correction", ["singularity-subtraction",
                                        "density-interpolation",
                                        "adaptive"])
@pytest.mark.parametrize("compression", ["none", "low-rank-hierarchical",
                                         "multipole"])
def test_double_layer_jump_on_circle(compression, correction):
    table = _circle()
    D = BoundaryOperator.build(LaplaceKernel(2, layer="double"), table,
                               compression=_compression(compression,
                                                        leaf_size=16),
                               correction=_correction(correction))
    assert D.state is OperatorState.ASSEMBLED
    ones = np.ones(len(table))
    assert np.allclose(-0.5 * ones + D @ ones, -1.0, atol=1e-7)


def test_single_layer_on_segment_matches_closed_form():
    table = build_quadrature(segment([-1.0, 0.0], [1.0, 0.0]), order=8)
    S = BoundaryOperator.build(LaplaceKernel(2), table,
                               compression=_compression(),
                               correction=_correction(
                                   "singularity-subtraction",
                                   tolerance=1e-10, max_levels=8))
    t = table.points[:, 0]
    exact = -((1 + t) * np.log(1 + t) + (1 - t) * np.log(1 - t) - 2.0) \
        / (2.0 * np.pi)
    assert np.allclose(S.apply(np.ones(len(table))), exact, rtol=1e-8)


def test_higher_correction_order_reduces_self_error():
    table = build_quadrature(segment([-1.0, 0.0], [1.0, 0.0]), order=8)
    t = table.points[:, 0]
    exact = -((1 + t) * np.log(1 + t) + (1 - t) * np.log(1 - t) - 2.0) \
        / (2.0 * np.pi)
    errors = []
    for order in (4, 6, 8, 12):
        # a loose tolerance stops after the first two levels
        S = BoundaryOperator.build(LaplaceKernel(2), table,
                                   compression=_compression(),
                                   correction=_correction(
                                       "singularity-subtraction", order=order,
                                       tolerance=1.0, max_levels=2))
        errors.append(np.max(np.abs(S.apply(np.ones(len(table))) - exact)))
    assert all(e2 < e1 for e1, e2 in zip(errors, errors[1:]))
    assert errors[-1] < 1e-7


@pytest.mark.parametrize("method", ["singularity-subtraction",
                                    "density-interpolation", "adaptive"])
def test_targets_close_to_the_boundary(method):
    radius = 2.0
    table = _circle(radius=radius)
    inside = Quadrature.from_points((1.0 - 1e-4 / radius) * table.points)
    S = BoundaryOperator.build(LaplaceKernel(2), table, target=inside,
                               compression=_compression(),
                               correction=_correction(method))
    assert S.shape == (len(inside), len(table))
    u = S.apply(np.ones(len(table)))
    assert np.allclose(u, -radius * np.log(radius), atol=1e-8)

    with pytest.raises(CorrectionDivergence) as info:
        BoundaryOperator.build(LaplaceKernel(2), table, target=inside,
                               compression=_compression(),
                               correction=_correction(method, tolerance=1e-15,
                                                      max_levels=2))
    assert info.value.levels == 2


def test_adaptive_corrections_on_coarse_circle():
    table = _circle(num_panels=8, order=4)
    S = BoundaryOperator.build(LaplaceKernel(2), table,
                               compression=_compression(),
                               correction=_correction("adaptive", order=4,
                                                      tolerance=1e-8))
    # S[1] = -R log R vanishes on the unit circle
    assert np.allclose(S.apply(np.ones(len(table))), 0.0, atol=1e-6)


def test_materialize_is_kernel_matrix_with_corrections():
    table = _circle(num_panels=12, order=4)
    kernel = LaplaceKernel(2)
    S = BoundaryOperator.build(kernel, table,
                               compression=_compression(),
                               correction=_correction(order=4))
    A = S.materialize()
    assert S.state is OperatorState.MATERIALIZED
    assert not A.flags.writeable
    assert S.materialize() is A

    N = len(table)
    diag = np.column_stack([np.arange(N)] * 2)
    expected = kernel.block(table.points, table.points, exclude=diag) * \
        table.weights[None, :]
    c = S.corrections
    expected[c.targets, c.sources] = c.values
    assert np.allclose(A, expected, rtol=1e-13, atol=1e-15)
    assert np.allclose(c.to_sparse().toarray()[c.targets, c.sources],
                       c.values)

    # entries of far elements are the plain weighted kernel
    integrator = ElementIntegrator(table, kernel, S.correction)
    far = table.element_slice(6)
    assert c.lookup(0, far.start) is None
    assert np.allclose(A[0, far],
                       integrator.regular_weights(table.points[0], None, 6))


def test_low_rank_matches_dense():
    table = _circle(num_panels=64)
    kernel = LaplaceKernel(2)
    correction = _correction(tolerance=1e-8)
    dense = BoundaryOperator.build(kernel, table, compression=_compression(),
                                   correction=correction)
    low_rank = BoundaryOperator.build(
        kernel, table,
        compression=_compression("low-rank-hierarchical", leaf_size=32),
        correction=correction)
    A, B = dense.materialize(), low_rank.materialize()
    assert np.linalg.norm(A - B) <= 1e-8 * np.linalg.norm(A)

    stats = low_rank.stats
    assert stats.num_low_rank > 0
    assert stats.num_fallbacks == 0
    assert stats.compression_ratio > 1.0
    assert dense.stats.num_blocks == 1


def test_apply_is_deterministic_with_threads():
    table = _circle()
    op = BoundaryOperator.build(
        LaplaceKernel(2), table,
        compression=_compression("low-rank-hierarchical", leaf_size=16,
                                 workers=2),
        correction=_correction(tolerance=1e-8, workers=2))
    serial = BoundaryOperator.build(
        LaplaceKernel(2), table,
        compression=_compression("low-rank-hierarchical", leaf_size=16),
        correction=_correction(tolerance=1e-8))
    x = np.cos(3 * np.arctan2(table.points[:, 1], table.points[:, 0]))
    y1 = op.apply(x)
    y2 = op.apply(x)
    assert np.array_equal(y1, y2)
    assert np.allclose(y1, serial.apply(x), rtol=1e-12, atol=1e-14)

    Y = op.apply(np.column_stack([x, 2.0 * x]))
    assert Y.shape == (len(table), 2)
    assert np.allclose(Y[:, 0], y1)
    assert np.allclose(Y[:, 1], 2.0 * y1)


@pytest.mark.parametrize("method", ["iterative", "direct"])
def test_exterior_neumann_problem(method):
    radius = 2.0
    table = _circle(radius=radius)
    Kp = BoundaryOperator.build(LaplaceKernel(2, layer="adjoint-double"),
                                table,
                                compression=_compression(
                                    "low-rank-hierarchical", leaf_size=16),
                                correction=_correction())
    solver = BIESolver(Kp, shift=-0.5)
    sigma = solver.solve(np.ones(len(table)), method=method)
    assert np.allclose(sigma, -1.0, atol=1e-8)
    if method == "iterative":
        assert solver.info == 0
        assert 0 < solver.iterations < 10

    # the single layer of sigma is constant inside: -R log R * sigma
    evaluator = PotentialEvaluator(table, LaplaceKernel(2))
    inside = radius * np.array([[0.0, 0.0], [0.5, -0.2], [-0.3, 0.6]])
    u = evaluator.evaluate(inside, sigma)
    assert np.allclose(u, radius * np.log(radius), atol=1e-7)


def test_solver_rejects_bad_input():
    table = _circle(num_panels=8, order=4)
    D = BoundaryOperator.build(LaplaceKernel(2, layer="double"), table,
                               compression=_compression(),
                               correction=_correction(order=4))
    solver = BIESolver(D, shift=-0.5)
    with pytest.raises(ValueError):
        solver.solve(np.ones(len(table) + 1))
    with pytest.raises(ValueError):
        solver.solve(np.ones(len(table)), method="cholesky")


@pytest.mark.parametrize("compression", ["none", "low-rank-hierarchical"])
def test_stokes_double_layer_jump(compression):
    table = _circle(num_panels=16)
    D = BoundaryOperator.build(StokesKernel(1.0, 2, layer="double"), table,
                               compression=_compression(compression,
                                                        leaf_size=16),
                               correction=_correction())
    N = len(table)
    assert D.shape == (2 * N, 2 * N)
    for e in ([1.0, 0.0], [0.0, 1.0]):
        x = np.tile(e, N)
        assert np.allclose(-0.5 * x + D.apply(x), -x, atol=1e-7)


@pytest.mark.parametrize("order, tolerance", [(4, 1e-4), (2, 1e-3)])
def test_double_layer_jump_on_polyhedron(order, tolerance):
    table = build_quadrature(sphere_mesh(1.0, divisions=2), order=order)
    D = BoundaryOperator.build(LaplaceKernel(3, layer="double"), table,
                               compression=_compression(),
                               correction=_correction("adaptive", order=order,
                                                      tolerance=tolerance,
                                                      max_levels=6))
    value = D.apply(np.ones(len(table)))
    assert np.max(np.abs(value + 0.5)) < 2e-2


def _solid_angle_integral(x, vertices):
    """∫_T ∂G/∂n_y dS_y of a flat triangle, from its signed solid angle."""
    a, b, c = vertices - x
    la, lb, lc = np.linalg.norm([a, b, c], axis=1)
    triple = np.dot(a, np.cross(b, c))
    denom = la * lb * lc + np.dot(a, b) * lc + np.dot(a, c) * lb + \
        np.dot(b, c) * la
    return -np.arctan2(triple, denom) / (2.0 * np.pi)


@pytest.mark.parametrize("method", ["singularity-subtraction",
                                    "density-interpolation", "adaptive"])
def test_near_weights_on_neighbouring_triangles(method):
    body = sphere_mesh(1.0, divisions=2)
    table = build_quadrature(body, order=4)
    integrator = ElementIntegrator(table, LaplaceKernel(3, layer="double"),
                                   CorrectionOptions(method, 4, 1e-8))
    for i in (0, 5, 17):
        x = table.points[i]
        own = table.element_ids[i]
        for e, el in enumerate(body):
            if e == own:
                continue
            W = integrator.near_weights(x, None, e, i)
            assert np.isclose(W.sum(), _solid_angle_integral(x, el.vertices),
                              rtol=1e-6, atol=1e-10)


def test_diagonal_and_linear_operator():
    table = _circle(num_panels=16)
    for kernel in (LaplaceKernel(2), StokesKernel(2.0, 2)):
        op = BoundaryOperator.build(kernel, table,
                                    compression=_compression(),
                                    correction=_correction(tolerance=1e-8))
        diag = op.diagonal()
        assert np.allclose(diag, np.diag(op.materialize()))

    L = op.as_linear_operator(shift=-0.5)
    x = np.linspace(0.0, 1.0, op.shape[1])
    assert L.shape == op.shape
    assert np.allclose(L.matvec(x), -0.5 * x + op.apply(x))


def test_helmholtz_compression_matches_dense():
    table = _circle(num_panels=48)
    kernel = HelmholtzKernel(2.0, 2)
    correction = _correction(tolerance=1e-6)
    dense = BoundaryOperator.build(kernel, table, compression=_compression(),
                                   correction=correction)
    x = np.exp(2j * np.arctan2(table.points[:, 1], table.points[:, 0]))
    reference = dense.apply(x)
    assert reference.dtype == np.complex128
    for method in ("low-rank-hierarchical", "multipole"):
        op = BoundaryOperator.build(kernel, table,
                                    compression=_compression(method,
                                                             leaf_size=16),
                                    correction=correction)
        assert np.linalg.norm(op.apply(x) - reference) <= \
            1e-8 * np.linalg.norm(reference)


def test_lifecycle_errors():
    table = _circle(num_panels=8, order=4)
    op = BoundaryOperator(LaplaceKernel(2), table,
                          compression=CompressionOptions("none", 1e-8),
                          correction=CorrectionOptions("adaptive", 4, 1e-6))
    assert op.state is OperatorState.UNINITIALIZED
    with pytest.raises(RuntimeError):
        op.apply(np.ones(len(table)))
    op.assemble()
    with pytest.raises(RuntimeError):
        op.assemble()
    with pytest.raises(ValueError):
        op.apply(np.ones(len(table) + 1))


def test_invalid_configurations():
    table = _circle(num_panels=8, order=4)
    with pytest.raises(ValueError):
        BoundaryOperator.build(LaplaceKernel(3), table,
                               compression=_compression(),
                               correction=_correction(order=4))
    with pytest.raises(ValueError):
        BoundaryOperator(LaplaceKernel(2), table, correction=_correction())

    box = build_quadrature(sphere_mesh(1.0, divisions=1), order=2)
    with pytest.raises(ValueError):
        BoundaryOperator.build(LaplaceKernel(3), box,
                               compression=_compression("multipole"),
                               correction=_correction(order=2))

    cloud = Quadrature.from_points(table.points)
    with pytest.raises(ValueError):
        BoundaryOperator.build(LaplaceKernel(2), cloud,
                               compression=_compression(),
                               correction=_correction(order=4))


def test_correction_divergence_is_reported():
    table = _circle(num_panels=8, order=4)
    with pytest.raises(CorrectionDivergence) as info:
        BoundaryOperator.build(LaplaceKernel(2), table,
                               compression=_compression(),
                               correction=_correction(order=4,
                                                      tolerance=1e-15,
                                                      max_levels=2))
    err = info.value
    assert err.levels == 2
    assert err.error > err.tolerance
    assert table.element_ids[err.target] == err.element


def test_unmet_block_falls_back_to_dense():
    table = _circle()
    kernel = LaplaceKernel(2)
    correction = _correction(tolerance=1e-8)
    reference = BoundaryOperator.build(kernel, table,
                                       compression=_compression(),
                                       correction=correction)
    with pytest.warns(CompressionAccuracyWarning) as record:
        op = BoundaryOperator.build(
            kernel, table,
            compression=dict(method="low-rank-hierarchical", tolerance=1e-12,
                             leaf_size=16, max_rank=1),
            correction=correction)
    # attributed to the calling code, not to the library
    assert all(w.filename == __file__ for w in record
               if issubclass(w.category, CompressionAccuracyWarning))
    stats = op.stats
    assert stats.num_fallbacks > 0
    assert stats.num_low_rank == 0
    assert np.allclose(op.materialize(), reference.materialize(),
                       rtol=1e-13, atol=1e-15)

    with pytest.raises(CompressionAccuracyUnmet):
        BoundaryOperator.build(
            kernel, table,
            compression=dict(method="low-rank-hierarchical", tolerance=1e-12,
                             leaf_size=16, max_rank=1, on_unmet="raise"),
            correction=correction)
