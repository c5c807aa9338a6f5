"""Linear and nonlinear solvers consuming assembled systems."""
import logging

import numpy as np
import scipy.linalg
import scipy.sparse
import scipy.sparse.linalg

logger = logging.getLogger(__name__)


def make_solver(B, symmetric=False, spd=False):
    """Return a :class:`LinearOperator` that acts as a linear solver for the
    (dense or sparse) square matrix `B`.

    If `B` is symmetric, passing ``symmetric=True`` may try to take advantage of this.
    If `B` is symmetric and positive definite, pass ``spd=True``.
    """
    if spd:
        symmetric = True

    if scipy.sparse.issparse(B):
        # symmetric matrices profit from a symmetric fill-reducing ordering
        permc = 'MMD_AT_PLUS_A' if symmetric else 'COLAMD'
        spLU = scipy.sparse.linalg.splu(B.tocsc(), permc_spec=permc)
        return scipy.sparse.linalg.LinearOperator(B.shape, dtype=B.dtype,
                matvec=spLU.solve, matmat=spLU.solve)
    else:
        B = np.asarray(B)
        if spd:
            chol = scipy.linalg.cho_factor(B, check_finite=False)
            solve = lambda x: scipy.linalg.cho_solve(chol, x, check_finite=False)
        else:
            LU = scipy.linalg.lu_factor(B, check_finite=False)
            solve = lambda x: scipy.linalg.lu_solve(LU, x, check_finite=False)
        return scipy.sparse.linalg.LinearOperator(B.shape, dtype=B.dtype,
                matvec=solve, matmat=solve)


class NoConvergenceError(Exception):
    def __init__(self, method, num_iter, last_iterate):
        Exception.__init__(self, '%s did not converge in %d iterations' % (method, num_iter))
        self.method = method
        self.num_iter = num_iter
        self.last_iterate = last_iterate


def newton(F, J, x0, atol=1e-6, rtol=1e-6, maxiter=100, freeze_jac=1):
    """Solve the nonlinear problem F(x) == 0 using Newton iteration.

    Args:
        F (function):      function computing the residual of the nonlinear equation
        J (function):      function computing the Jacobian matrix of `F`
        x0 (ndarray):      the initial guess as a vector
        atol (float):      absolute tolerance for the norm of the residual
        rtol (float):      relative tolerance with respect to the initial residual
        maxiter (int):     the maximum number of iterations
        freeze_jac (int):  if >1, the Jacobian is only updated every `freeze_jac` steps

    Returns:
        ndarray: a vector `x` which approximately satisfies F(x) == 0

    If `x0` is a float array, it is used as the iterate and updated in place,
    so `F` and `J` may refer to it through a :class:`.SolutionField`.
    Otherwise, a copy is made.
    """
    if isinstance(x0, np.ndarray) and x0.dtype == np.float64:
        x = x0
    else:
        x = np.array(x0, dtype=float)
    res = F(x)
    target = max(atol, rtol * np.linalg.norm(res))
    for num_it in range(maxiter):
        if np.linalg.norm(res) < target:    # converged?
            logger.info('newton converged after %d iterations, residual %g',
                        num_it, np.linalg.norm(res))
            return x
        if num_it % freeze_jac == 0:  # update Jacobian only every freeze_jac steps
            jac = J(x)
            jac_inv = make_solver(jac)
        x -= jac_inv.dot(res)
        res = F(x)
    raise NoConvergenceError('newton', maxiter, x)


def _as_operator(A):
    if A is None or (np.isscalar(A) and A == 1):
        return lambda x: x
    if callable(A) and not hasattr(A, 'shape'):
        return A
    return lambda x: A @ x

def pcg(A, f, x0=None, P=1, rtol=1e-5, atol=0.0, maxiter=100, raise_error=False):
    """Solve the linear system `Ax = f` by the preconditioned conjugate gradient method.

    Args:
        A (LinearOperator or ndarray or sparse matrix): the symmetric and
            positive definite matrix of the linear system
        f (ndarray): the right-hand side vector of the system
        x0 (ndarray): initial guess for the solution, by default the zero vector
        P (LinearOperator or ndarray or sparse matrix): preconditioner to use
            for the system; by default the identity map
        rtol (float), atol (float): iteration stops if the preconditioned
            residual has decreased by `rtol` relative to the initial one or
            is below `atol`
        maxiter (int): maximum number of iterations
        raise_error (bool): if True, raise :class:`NoConvergenceError` instead
            of returning a non-converged iterate

    Returns:
        a triple `(x, num_iter, converged)`
    """
    maxiter = int(maxiter)
    Afun, Pfun = _as_operator(A), _as_operator(P)

    f = np.asarray(f, dtype=float).ravel()
    x = np.zeros(len(f)) if x0 is None else np.array(x0, dtype=float).ravel()

    r = f - Afun(x)
    h = Pfun(r)
    rho = h @ r
    err0 = np.sqrt(abs(Pfun(f) @ f))
    target = max(rtol * err0, atol)
    if np.sqrt(abs(rho)) <= target:
        return x, 0, True

    d = h
    for it in range(maxiter):
        z = Afun(d)
        alpha = rho / (z @ d)
        x = x + alpha * d
        # h and d may alias r if P is the identity
        r = r - alpha * z
        h = Pfun(r)
        rho_old, rho = rho, h @ r
        if np.sqrt(abs(rho)) <= target:
            logger.info('pcg converged after %d iterations, relres %g',
                        it + 1, np.sqrt(abs(rho)) / err0 if err0 else 0.0)
            return x, it + 1, True
        d = h + (rho / rho_old) * d

    logger.info('pcg stopped after %d iterations without convergence', maxiter)
    if raise_error:
        raise NoConvergenceError('pcg', maxiter, x)
    return x, maxiter, False
