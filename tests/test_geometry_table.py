import numpy as np
import pytest
from scipy.special import ellipe

from fast_BEM import (Body, Quadrature, DegenerateElement, build_quadrature,
                      box_mesh, circle, ellipse, segment, sphere_mesh)


def test_circle_perimeter_and_normals():
    table = build_quadrature(circle(2.0, num_panels=12), order=6)
    assert table.num_points == 72
    assert table.num_elements == 12
    assert np.isclose(table.total_measure(), 4.0 * np.pi, rtol=1e-12)
    # outward normals on a centered circle are x / |x|
    radial = table.points / np.linalg.norm(table.points, axis=1)[:, None]
    assert np.allclose(table.normals, radial, atol=1e-12)


def test_ellipse_perimeter_converges():
    a, b = 2.0, 1.0
    exact = 4.0 * a * ellipe(1.0 - b**2 / a**2)
    coarse = build_quadrature(ellipse(a, b, num_panels=4), order=4)
    fine = build_quadrature(ellipse(a, b, num_panels=32), order=8)
    err_coarse = abs(coarse.total_measure() - exact)
    err_fine = abs(fine.total_measure() - exact)
    assert err_fine < err_coarse
    assert err_fine < 1e-10


def test_box_area_and_orientation():
    v, el = box_mesh(np.zeros(3), np.array([1.0, 2.0, 3.0]), divisions=2)
    body = Body.from_triangles(v, el, orient_from=np.zeros(3))
    table = build_quadrature(body, order=3)
    assert np.isclose(table.total_measure(), 22.0)
    outward = np.einsum('ij,ij->i', table.normals, table.points)
    assert np.all(outward > 0.0)


def test_sphere_area_converges():
    errors = []
    for divisions in (2, 4, 8):
        table = build_quadrature(sphere_mesh(1.0, divisions), order=2)
        errors.append(abs(table.total_measure() - 4.0 * np.pi))
    assert errors[0] > errors[1] > errors[2]
    assert errors[2] < 0.2 * errors[0]


def test_table_layout_and_helpers():
    table = build_quadrature(circle(1.0, num_panels=8), order=5)
    assert np.array_equal(table.element_offsets, np.arange(0, 45, 5))
    sl = table.element_slice(3)
    assert np.all(table.element_ids[sl] == 3)
    assert np.isclose(table.integrate(np.ones(len(table))), 2.0 * np.pi)
    assert np.allclose(table.point_h, table.element_sizes[table.element_ids])
    p = table.point(7)
    assert p.element == 1 and p.weight == table.weights[7]
    with pytest.raises(ValueError):
        table.points[0, 0] = 1.0


def test_from_points_has_no_geometry():
    cloud = Quadrature.from_points(np.array([[0.0, 0.0], [1.0, 0.0]]))
    assert cloud.num_elements == 2
    assert not cloud.has_geometry
    assert cloud.normals is None
    assert np.allclose(cloud.weights, 1.0)


def test_degenerate_triangle_is_reported():
    nodes = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0],
                      [2.0, 0.0, 0.0]])
    elements = np.array([[0, 1, 2], [0, 1, 3]])
    with pytest.raises(DegenerateElement) as info:
        build_quadrature(Body.from_triangles(nodes, elements), order=2)
    assert info.value.element == 1


def test_degenerate_panel_is_reported():
    with pytest.raises(DegenerateElement) as info:
        build_quadrature(segment([0.5, 0.5], [0.5, 0.5]), order=3)
    assert info.value.element == 0


def test_closest_reference():
    body = circle(1.0, num_panels=4)
    panel = body[0]
    ref, dist = panel.closest_reference(np.array([np.cos(0.3), np.sin(0.3)]))
    assert dist < 1e-10
    x, _, _ = panel.map(ref)
    assert np.allclose(x[0], [np.cos(0.3), np.sin(0.3)], atol=1e-10)

    tri = Body.from_triangles(np.array([[0.0, 0, 0], [1, 0, 0], [0, 1, 0]]),
                              np.array([[0, 1, 2]]))[0]
    ref, dist = tri.closest_reference(np.array([0.2, 0.3, 0.5]))
    assert np.allclose(ref, [0.2, 0.3])
    assert np.isclose(dist, 0.5)


def test_closest_reference_outside_an_obtuse_triangle():
    tri = Body.from_triangles(np.array([[0.0, 0, 0], [3, 0, 0],
                                        [2.8, 0.3, 0]]),
                              np.array([[0, 1, 2]]))[0]
    x = np.array([1.0, 1.0, 0.2])
    ref, dist = tri.closest_reference(x)
    y, _, _ = tri.map(ref[None, :])
    assert np.isclose(np.linalg.norm(x - y[0]), dist)

    t = np.linspace(0.0, 1.0, 20001)[:, None]
    v = tri.vertices
    edges = np.vstack([v[i] + t * (v[(i + 1) % 3] - v[i]) for i in range(3)])
    assert np.isclose(dist, np.min(np.linalg.norm(edges - x, axis=1)),
                      atol=1e-6)


def test_small_elements_are_accepted():
    h = 1e-7
    nodes = h * np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    table = build_quadrature(Body.from_triangles(nodes, np.array([[0, 1, 2]])),
                             order=3)
    assert np.isclose(table.total_measure(), 0.5 * h**2, rtol=1e-12, atol=0.0)

    table = build_quadrature(segment([0.0, 0.0], [1e-8, 0.0]), order=3)
    assert np.isclose(table.total_measure(), 1e-8, rtol=1e-12, atol=0.0)
