import numpy as np
import pytest

from igaexpr.bspline import *


def test_make_knots():
    kv = make_knots(2, 0.0, 1.0, 4)
    assert kv.numdofs == 6
    assert kv.numspans == 4
    assert np.allclose(kv.mesh, np.linspace(0, 1, 5))
    assert kv.support() == (0.0, 1.0)
    assert np.allclose(kv.greville(), [0.0, 0.125, 0.375, 0.625, 0.875, 1.0])
    kv2 = make_knots(3, 0.0, 2.0, 2, mult=2)
    assert kv2.numdofs == 3 + 1 + 2

def test_findspan():
    kv = make_knots(2, 0.0, 1.0, 4)
    assert kv.findspan(0.0) == 2
    assert kv.findspan(0.3) == 3
    # right endpoint belongs to the last span
    assert kv.findspan(1.0) == kv.kv.size - kv.p - 2
    assert kv.first_active_at(0.3) == 1

def test_refine():
    kv = make_knots(2, 0.0, 1.0, 2)
    assert kv.refine() == make_knots(2, 0.0, 1.0, 4)
    assert kv.refine([0.25]).numdofs == kv.numdofs + 1

def test_active_deriv():
    kv = make_knots(3, 0.0, 1.0, 5)
    x = np.array([0.1, 0.43, 0.77])
    h = 1e-6
    D = active_deriv(kv, x, 2)
    Dp = active_deriv(kv, x + h, 0)[0]
    Dm = active_deriv(kv, x - h, 0)[0]
    # partition of unity and its derivatives
    assert np.allclose(D[0].sum(axis=0), 1.0)
    assert np.allclose(D[1].sum(axis=0), 0.0)
    assert abs(D[1] - (Dp - Dm) / (2*h)).max() < 1e-6
    Dp1 = active_deriv(kv, x + h, 1)[1]
    Dm1 = active_deriv(kv, x - h, 1)[1]
    assert abs(D[2] - (Dp1 - Dm1) / (2*h)).max() < 1e-4

def test_collocation():
    kv = make_knots(3, 0.0, 1.0, 4)
    C = collocation(kv, kv.greville())
    assert C.shape == (kv.numdofs, kv.numdofs)
    assert np.allclose(C.sum(axis=1), 1.0)
    assert abs(np.linalg.det(C.toarray())) > 1e-8

def test_prolongation():
    kv1 = make_knots(2, 0.0, 1.0, 3)
    kv2 = kv1.refine()
    assert is_sub_space(kv1, kv2) and not is_sub_space(kv2, kv1)
    assert not is_sub_space(kv1, make_knots(2, 0.0, 1.0, 4))
    assert not is_sub_space(kv1, make_knots(3, 0.0, 1.0, 6))
    # interior knots of multiplicity 2 are not contained in a C1 space
    assert not is_sub_space(make_knots(2, 0.0, 1.0, 3, mult=2), kv2)
    P = prolongation(kv1, kv2)
    assert P.shape == (kv2.numdofs, kv1.numdofs)
    assert np.allclose(P.sum(axis=1), 1.0)
    c = np.sin(np.arange(kv1.numdofs))
    x = np.linspace(0.0, 1.0, 17)
    assert np.allclose(BSplineFunc(kv2, P @ c)(x), BSplineFunc(kv1, c)(x))

def test_deriv2_packing():
    assert deriv2_pairs(2) == [(0, 0), (1, 1), (0, 1)]
    assert deriv2_pairs(3) == [(0, 0), (1, 1), (2, 2), (0, 1), (0, 2), (1, 2)]
    H = np.array([[1.0, 2.0, 3.0], [2.0, 4.0, 5.0], [3.0, 5.0, 6.0]])
    D = pack_deriv2(H)
    assert np.allclose(D, [1, 4, 6, 2, 3, 5])
    assert np.allclose(unpack_deriv2(D, 3), H)

def test_parse_side():
    assert parse_side('left', 2) == (1, 0)
    assert parse_side('top', 2) == (0, 1)
    assert parse_side('front', 3) == (0, 0)
    assert parse_side((1, 1), 2) == (1, 1)
    assert parse_side(((0, 0),), 2) == (0, 0)
    with pytest.raises(ValueError):
        parse_side('front', 2)
    with pytest.raises(ValueError):
        parse_side(((0, 0), (1, 0)), 2)

def test_tensor_basis_indices():
    kvy = make_knots(2, 0.0, 1.0, 1)
    kvx = make_knots(3, 0.0, 1.0, 1)
    B = TensorBasis((kvy, kvx))
    assert B.shape == (3, 4)
    assert B.size == 12
    assert B.degree(0) == 3 and B.degree(1) == 2
    assert B.max_degree == 3
    assert np.array_equal(B.boundary_indices('left'), [0, 4, 8])
    assert np.array_equal(B.boundary_indices('right'), [3, 7, 11])
    assert np.array_equal(B.boundary_indices('bottom'), [0, 1, 2, 3])
    assert np.array_equal(B.boundary_indices('top'), [8, 9, 10, 11])
    assert np.array_equal(B.corner_indices(), [0, 3, 8, 11])
    assert B.flat_index((1, 2)) == 6
    assert tuple(B.tensor_index(6)) == (1, 2)

def test_tensor_basis_elements():
    B = TensorBasis((make_knots(1, 0.0, 1.0, 2), make_knots(2, 0.0, 3.0, 3)))
    els = list(B.elements())
    assert len(els) == B.num_elements() == 6
    # x runs fastest
    assert np.allclose(els[0].lower, [0.0, 0.0]) and np.allclose(els[0].upper, [1.0, 0.5])
    assert np.allclose(els[1].lower, [1.0, 0.0])
    assert np.allclose(els[3].lower, [0.0, 0.5])
    top = list(B.boundary_elements('top'))
    assert len(top) == 3
    for el in top:
        assert el.lower[1] == el.upper[1] == 1.0
    right = list(B.boundary_elements('right'))
    assert [el.index for el in right] == [2, 5]
    assert all(el.lower[0] == el.upper[0] == 3.0 for el in right)

def test_tensor_basis_eval():
    B = TensorBasis((make_knots(2, 0.0, 1.0, 3), make_knots(3, 0.0, 1.0, 2)))
    pts = np.array([[0.1, 0.2], [0.15, 0.3]])       # in the same element
    actives, (V, D, D2) = B.eval_derivs(pts, 2)
    assert len(actives) == 3 * 4
    assert V.shape == (2, 12) and D.shape == (2, 12, 2) and D2.shape == (2, 12, 3)
    assert np.allclose(V.sum(axis=1), 1.0)
    assert np.allclose(D.sum(axis=1), 0.0)
    assert np.allclose(D2.sum(axis=1), 0.0)
    assert np.array_equal(B.active(pts), actives)
    # finite difference check of the x derivative
    h = 1e-6
    _, (Vp,) = B.eval_derivs(pts + [h, 0], 0)
    _, (Vm,) = B.eval_derivs(pts - [h, 0], 0)
    assert abs(D[:, :, 0] - (Vp - Vm) / (2*h)).max() < 1e-6

def test_bsplinefunc():
    kv = make_knots(2, 0.0, 1.0, 2)
    grev = kv.greville()
    # the identity map in the quadratic spline space
    C = np.zeros((4, 4, 2))
    C[:, :, 0] = grev[None, :]
    C[:, :, 1] = grev[:, None]
    G = BSplineFunc((kv, kv), C)
    assert G.sdim == 2 and G.dim == 2
    pts = np.array([[0.2, 0.7], [0.9, 0.1]])
    X, J, D2 = G.pointwise_derivs(pts, 2)
    assert np.allclose(X, pts)
    assert np.allclose(J, np.eye(2)[None])
    assert np.allclose(D2, 0.0)
    assert np.allclose(G(0.2, 0.7), [0.2, 0.7])
    assert np.allclose(G.jacobian(0.3, 0.4), np.eye(2))
    assert G.coeff_matrix().shape == (16, 2)
    bd = G.boundary('right')
    assert bd.sdim == 1 and bd.dim == 2
    assert np.allclose(bd(0.25), [1.0, 0.25])
    assert np.allclose(G.translate((1.0, 2.0))(0.0, 0.0), [1.0, 2.0])
    assert np.allclose(G.scale(2.0)(0.5, 0.5), [1.0, 1.0])
    assert G.bounding_box() == ((0.0, 1.0), (0.0, 1.0))

def test_scalar_bsplinefunc():
    kv = make_knots(1, 0.0, 1.0, 1)
    f = BSplineFunc((kv, kv), [0.0, 1.0, 2.0, 3.0])
    assert f.is_scalar()
    assert np.isclose(f(0.5, 0.5), 1.5)
    assert np.allclose(f.jacobian(0.5, 0.5), [[1.0, 2.0]])
