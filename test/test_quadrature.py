import numpy as np

from igaexpr.quadrature import *
from igaexpr.bspline import make_knots, TensorBasis


def test_gauss_rule():
    # n nodes integrate polynomials of degree 2n-1 exactly
    x, w = gauss_rule(3, 0.0, 2.0)
    assert np.isclose(w.sum(), 2.0)
    assert np.isclose(w.dot(x**5), 2.0**6 / 6)
    # iterated rule over several intervals
    x, w = gauss_rule(2, [0.0, 1.0], [1.0, 3.0])
    assert x.shape == w.shape == (4,)
    assert np.isclose(w.sum(), 3.0)
    assert np.isclose(w.dot(x**3), 3.0**4 / 4)

def test_quadrule_map():
    rule = QuadRule([2, 3])
    pts, wts = rule.map_to([0.0, 1.0], [1.0, 3.0])
    assert pts.shape == (6, 2) and wts.shape == (6,)
    assert np.isclose(wts.sum(), 2.0)
    # x runs fastest
    assert pts[0, 1] == pts[1, 1]
    assert pts[0, 0] < pts[1, 0]
    assert pts[0, 1] < pts[2, 1]
    assert np.isclose(wts.dot(pts[:, 0]**3 * pts[:, 1]**5), (1.0 / 4) * (3.0**6 - 1.0) / 6)

def test_quadrule_degenerate():
    # collapsed direction gives a rule on the side y = 1
    pts, wts = QuadRule([3, 3]).map_to([0.0, 1.0], [1.0, 1.0])
    assert pts.shape == (3, 2)
    assert np.all(pts[:, 1] == 1.0)
    assert np.isclose(wts.sum(), 1.0)

def test_get_quadrature():
    kvy = make_knots(3, 0.0, 1.0, 2)
    kvx = make_knots(2, 0.0, 1.0, 2)
    B = TensorBasis((kvy, kvx))
    assert get_quadrature(B) == QuadRule([3, 4])
    assert get_quadrature(B, quA=0.0, quB=3) == QuadRule([3, 3])
    assert get_quadrature(B, quA=2.0, quB=1) == QuadRule([5, 7])

def test_unit_square_area():
    # degree 3 Gauss rule, summed over all elements
    B = TensorBasis((make_knots(2, 0.0, 1.0, 3), make_knots(2, 0.0, 1.0, 4)))
    rule = QuadRule([3, 3])
    total = sum(rule.map_to(el.lower, el.upper)[1].sum() for el in B.elements())
    assert abs(total - 1.0) <= 1e-10
