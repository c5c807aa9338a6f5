import numpy as np
import pytest

from igaexpr.evaluation import *
from igaexpr.bspline import make_knots, TensorBasis
from igaexpr.expressions import GeometryMap, Space
from igaexpr import geometry


def test_need_flags():
    assert derivative_order(Need.VALUE) == 0
    assert derivative_order(Need.VALUE | Need.MEASURE) == 1
    assert derivative_order(Need.GRAD_TRANSFORM) == 1
    assert derivative_order(Need.DERIV | Need.DERIV2) == 2

def test_small_linalg():
    A = np.array([[2.0, 1.0, 0.5],
                  [0.3, 3.0, 1.0],
                  [0.0, 0.7, 1.5]])
    assert np.isclose(det(A), np.linalg.det(A))
    assert np.allclose(inv(A), np.linalg.inv(A))
    B = np.array([[[1.0, 2.0], [0.5, 3.0]], [[4.0, 0.0], [1.0, 1.0]]])
    assert np.allclose(det(B), np.linalg.det(B))
    assert np.allclose(inv(B), np.linalg.inv(B))
    assert np.allclose(inv(np.array([[4.0]])), [[0.25]])
    # rectangular full-rank matrices
    J = np.array([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]])
    assert np.allclose(pinv(J), np.linalg.pinv(J))
    assert np.allclose(pinv(J.T), np.linalg.pinv(J.T))
    assert np.isclose(measure(J), np.sqrt(np.linalg.det(J.T @ J)))

def test_singular_inverse():
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    assert det(A) == 0.0
    assert not np.isfinite(inv(A)).all()
    assert not np.isfinite(pinv(A)).all()
    assert measure(A) == 0.0

def test_normals():
    J = np.array([[[0.0], [2.0]]])          # tangent (0, 2)
    assert np.allclose(unscaled_normal(J), [[-2.0, 0.0]])
    J = np.array([[[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]]])
    assert np.allclose(unscaled_normal(J), [[0.0, 0.0, 1.0]])
    J2 = 2 * np.eye(2)[None]
    # right side (x = 1): normal (+1, 0) with the length of the side
    assert np.allclose(outer_normal(J2, 0, 1), [[2.0, 0.0]])
    assert np.allclose(outer_normal(J2, 0, 0), [[-2.0, 0.0]])
    assert np.allclose(outer_normal(J2, 1, 0), [[0.0, -2.0]])
    # orientation-reversing map
    Jr = np.array([[[0.0, 1.0], [1.0, 0.0]]])
    assert np.allclose(outer_normal(Jr, 0, 1), [[0.0, 1.0]])

def test_geometry_data():
    geo = geometry.unit_square().scale(2.0)
    pts = np.array([[0.5, 0.5], [0.1, 0.9]])
    data = eval_geometry_data('G', geo, pts, Need.MEASURE)
    assert data.num_points == 2
    assert np.allclose(data.values, 2 * pts)
    assert np.allclose(data.measure, 4.0)
    assert np.allclose(data.jac, 2 * np.eye(2)[None])
    with pytest.raises(RuntimeError):
        data.jac_inv
    with pytest.raises(RuntimeError):
        data.deriv2
    data = eval_geometry_data('G', geo, pts, Need.GRAD_TRANSFORM)
    assert np.allclose(data.jac_inv, 0.5 * np.eye(2)[None])
    data = eval_geometry_data('G', geo, np.array([[1.0, 0.3]]), Need.OUTER_NORMAL, side=(1, 1))
    assert np.allclose(data.outer_normal, [[2.0, 0.0]])
    with pytest.raises(RuntimeError):
        eval_geometry_data('G', geo, pts, Need.OUTER_NORMAL)

def test_curve_measure():
    geo = geometry.helix(r=1.0, h=2.0)
    data = eval_geometry_data('G', geo, np.array([[0.1], [0.6]]), Need.MEASURE | Need.DERIV2)
    assert np.allclose(data.measure, np.sqrt((2*np.pi)**2 + 4.0))
    assert data.deriv2.shape == (2, 1, 3)

def test_degenerate_geometry():
    # all corners on the line x = y
    geo = geometry.bilinear_patch([[0.0, 1.0, 1.0, 2.0],
                                   [0.0, 1.0, 1.0, 2.0]])
    data = eval_geometry_data('G', geo, np.array([[0.3, 0.4]]), Need.MEASURE | Need.GRAD_TRANSFORM)
    assert data.measure[0] == 0.0
    assert not np.isfinite(data.jac_inv).all()

def test_basis_data():
    kv = make_knots(2, 0.0, 1.0, 3)
    B = TensorBasis((kv, kv))
    pts = np.array([[0.1, 0.2]])
    data = eval_basis_data('u', B, pts, Need.VALUE)
    assert len(data.actives) == 9
    assert data.values.shape == (1, 9)
    with pytest.raises(RuntimeError):
        data.derivs
    data = eval_basis_data('u', B, pts, Need.GRAD_TRANSFORM)
    assert data.derivs.shape == (1, 9, 2)

class _DroppedActiveBasis:
    """Reports one active function less than it evaluates."""
    sdim = 2

    def __init__(self, basis, order_short=0):
        self.basis = basis
        self.order_short = order_short

    def eval_derivs(self, points, order=0):
        actives, vals = self.basis.eval_derivs(points, order)
        if self.order_short == 0:
            return actives[:-1], vals
        vals = list(vals)
        vals[self.order_short] = vals[self.order_short][:, :-1]
        return actives, vals

def test_basis_data_mismatch():
    kv = make_knots(2, 0.0, 1.0, 3)
    B = TensorBasis((kv, kv))
    pts = np.array([[0.1, 0.2], [0.2, 0.25]])
    with pytest.raises(AssertionError, match='number of active functions'):
        eval_basis_data('u', _DroppedActiveBasis(B), pts, Need.VALUE)
    with pytest.raises(AssertionError, match='derivative columns'):
        eval_basis_data('u', _DroppedActiveBasis(B, 1), pts, Need.DERIV)
    with pytest.raises(AssertionError):
        eval_basis_data('u', _DroppedActiveBasis(B, 2), pts, Need.DERIV2)

def test_registry_and_context():
    kv = make_knots(1, 0.0, 1.0, 2)
    G = GeometryMap(geometry.unit_square(2))
    u = Space(TensorBasis((kv, kv)))
    reg = FlagRegistry()
    u.parse(reg)
    reg.add(u, Need.DERIV)
    reg.add(G, Need.VALUE)
    reg.add(G, Need.MEASURE)
    assert len(reg) == 2 and G in reg
    assert reg.flags(G) == Need.VALUE | Need.MEASURE
    assert reg.flags(u) & Need.DERIV
    # geometry maps are evaluated before spaces
    assert reg.sources() == [G, u]
    reg2 = reg.copy()
    reg2.add(G, Need.DERIV2)
    assert not (reg.flags(G) & Need.DERIV2)

    ctx = EvalContext(reg)
    ctx.evaluate_at(0, np.array([[0.25, 0.25], [0.3, 0.1]]))
    assert ctx.num_points == 2
    assert np.allclose(ctx.data(G).measure, 1.0)
    assert ctx.data(u).derivs.shape == (2, 4, 2)
    with pytest.raises(RuntimeError):
        ctx.data(G).jac_inv
    with pytest.raises(RuntimeError):
        ctx.data(object())

def test_scratch():
    s = Scratch()
    s.at(0)['a'] = 1
    assert s.at(0) == {'a': 1}
    assert s.at(1) == {}
    s.at(1)['b'] = 2
    s.reset()
    assert s.node is None and s.at(1) == {}
