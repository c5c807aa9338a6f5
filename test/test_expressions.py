import numpy as np
import pytest

from igaexpr.expressions import *
from igaexpr.assemble import ExprAssembler, ExprEvaluator
from igaexpr.bspline import make_knots, collocation, TensorBasis, BSplineFunc
from igaexpr import geometry


def _setup(geo=None, p=2, n=3):
    if geo is None:
        geo = geometry.quarter_annulus()
    kv = make_knots(p, 0.0, 1.0, n)
    A = ExprAssembler()
    G = A.get_map(geo)
    u = A.get_space(TensorBasis((kv, kv)))
    return G, u, ExprEvaluator(A)

def test_shapes():
    kv = make_knots(2, 0.0, 1.0, 2)
    G = GeometryMap(geometry.quarter_annulus())
    u = Space(TensorBasis((kv, kv)))
    v = Space(TensorBasis((kv, kv)), dim=2, id=1)

    assert G.shape == (2, 1) and G.role == Role.NONE
    assert u.shape == (1, 1) and u.role == Role.ROW
    assert u.tr().role == Role.COL and u.tr().col_var is u
    assert grad(u).shape == (1, 2)
    assert jac(G).shape == (2, 2)
    assert jac(G).ginv().shape == (2, 2)
    assert deriv2(G).shape == (3, 2)
    assert hess(u).shape == (2, 2) and hess(u).role == Role.ROW
    assert ihess(u, G).shape == (2, 2)
    assert nv(G).shape == (2, 1)

    gu = igrad(u, G)
    assert gu.shape == (1, 2) and gu.role == Role.ROW
    K = gu * gu.tr()
    assert K.shape == (1, 1) and K.role == Role.BOTH
    assert K.row_var is u and K.col_var is u
    assert (K * meas(G)).shape == (1, 1)
    assert (u * meas(G)).role == Role.ROW
    assert (2.0 * u).shape == (1, 1)
    assert meas(G).is_scalar()
    assert not u.is_scalar()

    assert v.shape == (2, 1)
    assert grad(v).shape == (2, 2)
    assert idiv(v, G).shape == (1, 1) and idiv(v, G).role == Role.ROW
    M = v.tr() * v
    assert M.shape == (1, 1) and M.role == Role.BOTH
    assert (igrad(v, G) * igrad(v, G).tr()).shape == (2, 2)
    assert v.nocb().shape == (1, 2)
    assert jac(G).nocb().shape == (1, 4)
    assert grad(v).cwisetr().role == Role.ROW

    assert (G.tr() * G).shape == (1, 1)
    assert G.norm().is_scalar() and G.sqnorm().is_scalar()
    assert jac(G).det().is_scalar()
    assert jac(G).inv().shape == (2, 2)
    assert jac(G).trace().shape == (1, 1)
    assert as_expr([1.0, 2.0, 3.0]).shape == (3, 1)
    assert identity(3).shape == (3, 3)
    assert sqrt(meas(G)).is_scalar()
    assert as_expr([1.0, 0.0, 0.0]).cross([0.0, 1.0, 0.0]).shape == (3, 1)

def test_role_errors():
    kv = make_knots(1, 0.0, 1.0, 2)
    G = GeometryMap(geometry.unit_square())
    u = Space(TensorBasis((kv, kv)))
    v = Space(TensorBasis((kv, kv)), dim=2)
    with pytest.raises(TypeError):
        u * u
    with pytest.raises(TypeError):
        u.tr() * u.tr()
    with pytest.raises(TypeError):
        u + u.tr()
    with pytest.raises(TypeError):
        u + meas(G)
    with pytest.raises(TypeError):
        u / u
    with pytest.raises(TypeError):
        grad(u).inv()
    with pytest.raises(TypeError):
        hess(v)
    with pytest.raises(TypeError):
        grad(as_expr(1.0))
    with pytest.raises(TypeError):
        as_expr('u')

def test_shape_errors():
    G = GeometryMap(geometry.unit_square())
    with pytest.raises(ValueError, match='incompatible shapes'):
        jac(G) * as_expr([1.0, 2.0, 3.0])
    with pytest.raises(ValueError, match='incompatible shapes'):
        jac(G) + G
    with pytest.raises(ValueError):
        G.val()
    with pytest.raises(ValueError):
        G.trace()
    with pytest.raises(ValueError):
        G.cross(G)
    with pytest.raises(ValueError):
        as_expr(np.zeros((2, 2, 2)))
    with pytest.raises(ValueError):
        nv(GeometryMap(geometry.helix()))

def test_iterexprs():
    G = GeometryMap(geometry.unit_square())
    e = jac(G).det() * meas(G)
    nodes = list(iterexprs(e))
    assert nodes[0] is e
    assert sum(1 for n in nodes if n is G) == 2
    assert 'meas(G)' in str(e)

def test_eval_geometry():
    geo = geometry.quarter_annulus()
    G, u, ev = _setup(geo)
    pt = [0.3, 0.7]
    assert np.allclose(ev.eval(G, pt), geo(*pt)[:, None])
    J = geo.jacobian(*pt)
    assert np.allclose(ev.eval(jac(G), pt), J)
    assert np.allclose(ev.eval(jac(G).ginv(), pt), np.linalg.inv(J))
    assert np.allclose(ev.eval(jac(G).inv(), pt), np.linalg.inv(J))
    assert np.isclose(ev.eval(meas(G), pt)[0, 0], abs(np.linalg.det(J)))
    assert np.isclose(ev.eval(jac(G).det(), pt)[0, 0], np.linalg.det(J))
    assert np.isclose(ev.eval(G.norm(), pt)[0, 0], np.linalg.norm(geo(*pt)))
    assert np.isclose(ev.eval(G.tr() * G, pt)[0, 0], np.sum(geo(*pt)**2))
    assert np.isclose(ev.eval(exp(meas(G)), pt)[0, 0], np.exp(abs(np.linalg.det(J))))
    assert np.allclose(ev.eval(2.0 * jac(G) - jac(G), pt), J)
    assert np.allclose(ev.eval(jac(G) / meas(G), pt), J / abs(np.linalg.det(J)))

def test_eval_space():
    G, u, ev = _setup()
    pt = [0.3, 0.7]
    basis = u.bases[0]
    actives, (V, D) = basis.eval_derivs(np.array([pt]), 1)
    N = len(actives)
    val = ev.eval(u, pt)
    assert val.shape == (N, 1, 1)
    assert np.allclose(val[:, 0, 0], V[0])
    Jinv = np.linalg.inv(G.patches[0].jacobian(*pt))
    gu = ev.eval(igrad(u, G), pt)
    assert gu.shape == (N, 1, 2)
    assert np.allclose(gu[:, 0, :], D[0].dot(Jinv))
    K = ev.eval(igrad(u, G) * igrad(u, G).tr(), pt)
    assert K.shape == (N, N, 1, 1)
    assert np.allclose(K[..., 0, 0], gu[:, 0, :].dot(gu[:, 0, :].T))
    M = ev.eval(u * u.tr(), pt)
    assert np.allclose(M[..., 0, 0], np.outer(V[0], V[0]))
    # transposition swaps the function axes
    B = igrad(u, G) * jac(G) * igrad(u, G).tr()
    S = ev.eval(B, pt)
    T = ev.eval(B.tr(), pt)
    assert np.allclose(T, np.swapaxes(np.swapaxes(S, 0, 1), -1, -2))
    H = ev.eval(hess(u), pt)
    assert H.shape == (N, 2, 2)
    assert np.allclose(H, np.swapaxes(H, -1, -2))

def test_vector_space():
    kv = make_knots(2, 0.0, 1.0, 2)
    A = ExprAssembler()
    G = A.get_map(geometry.unit_square().scale(2.0))
    v = A.get_space(TensorBasis((kv, kv)), dim=2)
    ev = ExprEvaluator(A)
    pt = [0.4, 0.6]
    actives, (V, D) = v.bases[0].eval_derivs(np.array([pt]), 1)
    N = len(actives)
    val = ev.eval(v, pt)
    assert val.shape == (2*N, 2, 1)
    assert np.allclose(val[:N, 0, 0], V[0]) and np.allclose(val[:N, 1, 0], 0.0)
    assert np.allclose(val[N:, 1, 0], V[0]) and np.allclose(val[N:, 0, 0], 0.0)
    dv = ev.eval(idiv(v, G), pt)
    assert dv.shape == (2*N, 1, 1)
    assert np.allclose(dv[:N, 0, 0], D[0, :, 0] / 2)
    assert np.allclose(dv[N:, 0, 0], D[0, :, 1] / 2)
    # (grad v)^T has the derivatives of component d in column d
    gt = ev.eval(igrad(v, G).cwisetr(), pt)
    assert np.allclose(gt[N:, :, 1], D[0] / 2)

def test_solution_field_on_annulus():
    # the x coordinate of the geometry, as a field in the geometry's own basis
    geo = geometry.quarter_annulus()
    A = ExprAssembler()
    G = A.get_map(geo)
    u = A.get_space(TensorBasis(geo.kvs))
    f = A.get_solution(u, geo.coeffs[..., 0].ravel().copy())
    ev = ExprEvaluator(A)
    pt = [0.35, 0.8]
    assert np.isclose(ev.eval(f, pt)[0, 0], geo(*pt)[0])
    assert np.allclose(ev.eval(igrad(f, G), pt), [[1.0, 0.0]])
    assert abs(ev.eval(ihess(f, G), pt)).max() < 1e-10
    # physical Hessian of a space on an affine map
    G2, u2, ev2 = _setup(geometry.unit_square().scale(2.0))
    pt = [0.3, 0.6]
    assert np.allclose(ev2.eval(ihess(u2, G2), pt), ev2.eval(hess(u2), pt) / 4)

def test_coeff_function():
    geo = geometry.quarter_annulus()
    G, u, ev = _setup(geo)
    f = CoeffFunction(lambda x, y: x * y, G)
    assert f.shape == (1, 1) and f.is_scalar()
    pt = [0.5, 0.5]
    X = geo(*pt)
    assert np.isclose(ev.eval(f, pt)[0, 0], X[0] * X[1])
    g = CoeffFunction(lambda x, y: (x, 2*y, 3.0))
    assert g.shape == (3, 1)
    assert np.allclose(ev.eval(g, pt)[:, 0], [0.5, 1.0, 3.0])
    # a spline coefficient in parametric coordinates has derivatives
    h = CoeffFunction(geo)
    assert h.has_derivatives()
    assert np.allclose(ev.eval(jac(h), pt), geo.jacobian(*pt))

def test_fd_gradient_bilinear():
    P = np.array([[0.0, 2.0, 0.5, 1.8],
                  [0.0, 0.0, 1.0, 1.6]])
    geo = geometry.bilinear_patch(P)
    G, u, ev = _setup(geo, p=2, n=2)
    basis = u.bases[0]
    xi = np.array([0.3, 0.6])
    gx = ev.eval(igrad(u, G), xi)[:, 0, :]      # physical gradients, N x 2
    actives = basis.active(xi[None])
    h = 1e-6
    for j in range(2):
        e = np.zeros(2)
        e[j] = h
        ap, (Vp,) = basis.eval_derivs((xi + e)[None])
        am, (Vm,) = basis.eval_derivs((xi - e)[None])
        assert np.array_equal(ap, actives) and np.array_equal(am, actives)
        dphi = (Vp[0] - Vm[0]) / (2*h)
        dX = (geo(*(xi + e)) - geo(*(xi - e))) / (2*h)
        # chain rule: d/dxi_j (phi o G^-1 o G) = grad_x phi . dG/dxi_j
        assert abs(gx.dot(dX) - dphi).max() < 1e-6

def test_degenerate_geometry_eval():
    geo = geometry.bilinear_patch([[0.0, 1.0, 1.0, 2.0],
                                   [0.0, 1.0, 1.0, 2.0]])
    G, u, ev = _setup(geo, p=1, n=1)
    pt = [0.4, 0.4]
    assert ev.eval(meas(G), pt)[0, 0] == 0.0
    assert not np.isfinite(ev.eval(igrad(u, G), pt)).all()

################################################################################
# space curves
################################################################################

def _curve_setup():
    # cubic spline interpolant of a helix; its control points are the DOFs
    kv = make_knots(3, 0.0, 1.0, 4)
    grev = kv.greville()
    X = geometry.helix(r=1.0, h=0.5).pointwise_derivs(grev[:, None], 0)[0]
    coeffs = np.linalg.solve(collocation(kv, grev).toarray(), X)
    geo = BSplineFunc(kv, coeffs)
    A = ExprAssembler()
    G = A.get_map(geo)
    u = A.get_space(TensorBasis(kv), dim=3)
    return geo, G, u, ExprEvaluator(A)

def _fd_dofs(geo, u, t, func, h=1e-6):
    """Central differences of `func()` with respect to all DOFs of `u` active at `t`."""
    actives = u.bases[0].active(np.array([t]))
    result = []
    for d in range(3):
        for a in actives:
            geo.coeffs[a, d] += h
            fp = func()
            geo.coeffs[a, d] -= 2*h
            fm = func()
            geo.coeffs[a, d] += h
            result.append((fp - fm) / (2*h))
    return np.array(result)

def _assert_close(exact, approx, tol=1e-5):
    assert exact.shape == approx.shape
    assert abs(exact - approx).max() <= tol * max(1.0, abs(exact).max())

def test_curve_dimensions():
    with pytest.raises(ValueError, match='Domain dimension should be 1, but is 2'):
        binormal(GeometryMap(geometry.unit_square()))
    with pytest.raises(ValueError, match='Target dimension should be 3, but is 2'):
        curve_normal(GeometryMap(geometry.line_segment([0.0, 0.0], [1.0, 1.0])))
    geo, G, u, ev = _curve_setup()
    scalar = Space(TensorBasis(geo.kvs))
    with pytest.raises(TypeError):
        bvar1(scalar, G)
    assert bvar1(u, G).shape == (1, 3) and bvar1(u, G).role == Role.ROW
    assert nvar2(u, u, G).role == Role.BOTH

def test_binormal_of_helix():
    r, h = 1.0, 0.5
    w = 2 * np.pi
    A = ExprAssembler()
    G = A.get_map(geometry.helix(r, h))
    ev = ExprEvaluator(A)
    t = 0.3
    s, c = np.sin(w*t), np.cos(w*t)
    b = np.array([h*s, -h*c, r*w]) / np.sqrt(h**2 + (r*w)**2)
    assert np.allclose(ev.eval(binormal(G), [t])[:, 0], b)
    assert np.allclose(ev.eval(curve_normal(G), [t])[:, 0], [-c, -s, 0.0])

def test_bvar1():
    geo, G, u, ev = _curve_setup()
    t = [0.37]
    exact = ev.eval(bvar1(u, G), t)[:, 0, :]
    fd = _fd_dofs(geo, u, t, lambda: ev.eval(binormal(G), t)[:, 0])
    _assert_close(exact, fd)

def test_nvar1():
    geo, G, u, ev = _curve_setup()
    t = [0.62]
    exact = ev.eval(nvar1(u, G), t)[:, 0, :]
    fd = _fd_dofs(geo, u, t, lambda: ev.eval(curve_normal(G), t)[:, 0])
    _assert_close(exact, fd)

def test_bvar2():
    geo, G, u, ev = _curve_setup()
    t = [0.37]
    exact = ev.eval(bvar2(u, u, G), t)[:, :, 0, :]          # (row, col, 3)
    fd = _fd_dofs(geo, u, t, lambda: ev.eval(bvar1(u, G), t)[:, 0, :])     # (col, row, 3)
    _assert_close(exact, np.swapaxes(fd, 0, 1))
    # second variations are symmetric in the two DOFs
    _assert_close(exact, np.swapaxes(exact, 0, 1), tol=1e-10)

def test_nvar2():
    geo, G, u, ev = _curve_setup()
    t = [0.81]
    exact = ev.eval(nvar2(u, u, G), t)[:, :, 0, :]
    fd = _fd_dofs(geo, u, t, lambda: ev.eval(nvar1(u, G), t)[:, 0, :])
    _assert_close(exact, np.swapaxes(fd, 0, 1))
    _assert_close(exact, np.swapaxes(exact, 0, 1), tol=1e-10)
