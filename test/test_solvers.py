from igaexpr.solvers import *
import numpy as np
import scipy.sparse
import pytest

def _laplace_1d(n):
    return scipy.sparse.diags([-np.ones(n-1), 2*np.ones(n), -np.ones(n-1)], [-1, 0, 1], format='csr')

def test_make_solver():
    from numpy.random import rand
    A = _laplace_1d(20)
    f = rand(20)
    for B in (A, A.toarray()):
        for kw in ({}, dict(symmetric=True), dict(spd=True)):
            solver = make_solver(B, **kw)
            assert np.allclose(A @ solver.dot(f), f)
    N = A.toarray() + np.diag(np.arange(19), 1)     # nonsymmetric
    assert np.allclose(N @ make_solver(N).dot(f), f)
    X = rand(20, 3)
    assert np.allclose(A @ make_solver(A).matmat(X), X)

def test_newton():
    def F(x): return np.array([np.sin(x[0]) - 1/2])
    def J(x): return np.array([[np.cos(x[0])]])
    x = newton(F, J, [0.0])
    assert np.allclose(x, np.pi / 6)

def test_newton_frozen():
    def F(x): return np.array([x[0]**2 - 2.0, x[1] - x[0]])
    def J(x): return np.array([[2*x[0], 0.0], [-1.0, 1.0]])
    x = newton(F, J, [1.0, 0.0], atol=1e-12, rtol=0.0, freeze_jac=3)
    assert np.allclose(x, [np.sqrt(2), np.sqrt(2)])

def test_newton_no_convergence():
    def F(x): return np.array([x[0]**2 + 1.0])
    def J(x): return np.array([[2*x[0] + 1e-3]])
    with pytest.raises(NoConvergenceError) as info:
        newton(F, J, [1.0], maxiter=5)
    assert info.value.num_iter == 5
    assert info.value.last_iterate.shape == (1,)

def test_pcg():
    A = _laplace_1d(50)
    f = np.ones(50)
    x, it, converged = pcg(A, f, rtol=1e-10, maxiter=200)
    assert converged and it < 200
    assert np.allclose(A @ x, f)
    # exact preconditioner converges in one step
    x, it, converged = pcg(A, f, P=make_solver(A), rtol=1e-10)
    assert converged and it == 1
    # callable operators
    x, it, converged = pcg(lambda v: A @ v, f, rtol=1e-10, maxiter=200)
    assert converged
    x, it, converged = pcg(A, np.zeros(50))
    assert converged and it == 0 and not x.any()

def test_pcg_no_convergence():
    A = _laplace_1d(50)
    f = np.ones(50)
    x, it, converged = pcg(A, f, rtol=1e-12, maxiter=3)
    assert not converged and it == 3
    with pytest.raises(NoConvergenceError):
        pcg(A, f, rtol=1e-12, maxiter=3, raise_error=True)

def test_pcg_identity_preconditioner():
    # unpreconditioned CG terminates after at most n steps up to rounding
    A = _laplace_1d(50)
    f = np.ones(50)
    for P in (1, None, lambda v: v, np.eye(50)):
        x, it, converged = pcg(A, f, P=P, rtol=1e-10, maxiter=60)
        assert converged
        assert np.allclose(A @ x, f)

def test_newton_in_place():
    x0 = np.zeros(2)
    def F(x): return np.array([x0[0]**2 - 2.0, x0[1] - x0[0]])   # refers to x0 only
    def J(x): return np.array([[2*x0[0], 0.0], [-1.0, 1.0]])
    x0[:] = 1.0
    x = newton(F, J, x0, atol=1e-12, rtol=0.0)
    assert x is x0
    assert np.allclose(x0, [np.sqrt(2), np.sqrt(2)])
    # lists are copied
    x1 = [1.0, 1.0]
    newton(F, J, x1)
    assert x1 == [1.0, 1.0]
