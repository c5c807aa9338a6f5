"""Per-element evaluation cache for geometry maps, bases and fields.

Expressions declare in :meth:`.Expr.parse` which data they need from which
source (a geometry map, a discrete space, a coefficient function or a
solution field) by adding :class:`Need` flags to a :class:`FlagRegistry`.
An :class:`EvalContext` then evaluates exactly the requested data on one
element at a time; the data of the previous element is discarded.
"""
import enum

import numpy as np

from .bspline import deriv2_pairs


class Need(enum.IntFlag):
    """Evaluation flags."""
    NONE = 0
    VALUE = 1
    DERIV = 2
    DERIV2 = 4
    MEASURE = 8
    GRAD_TRANSFORM = 16
    ACTIVE = 32
    OUTER_NORMAL = 64

# flags which require the Jacobian of a geometry map
_NEEDS_JACOBIAN = Need.DERIV | Need.MEASURE | Need.GRAD_TRANSFORM | Need.OUTER_NORMAL


def derivative_order(flags):
    """Highest derivative order required by the given flags."""
    if flags & Need.DERIV2:
        return 2
    elif flags & _NEEDS_JACOBIAN:
        return 1
    return 0

################################################################################
# small dense linear algebra, vectorized over leading axes
################################################################################

def cofactors(A):
    """Cofactor matrices of an array of square matrices (size up to 3)."""
    n = A.shape[-1]
    C = np.empty_like(A)
    if n == 1:
        C[..., 0, 0] = 1.0
    elif n == 2:
        C[..., 0, 0] =  A[..., 1, 1]
        C[..., 0, 1] = -A[..., 1, 0]
        C[..., 1, 0] = -A[..., 0, 1]
        C[..., 1, 1] =  A[..., 0, 0]
    elif n == 3:
        for i in range(3):
            for j in range(3):
                i1, i2 = [r for r in range(3) if r != i]
                j1, j2 = [c for c in range(3) if c != j]
                C[..., i, j] = (-1)**(i+j) * (A[..., i1, j1] * A[..., i2, j2]
                                              - A[..., i1, j2] * A[..., i2, j1])
    else:
        raise ValueError('cofactors only implemented for matrices up to 3x3')
    return C

def det(A):
    """Determinants of an array of square matrices (size up to 3; larger via LAPACK)."""
    n = A.shape[-1]
    if n > 3:
        return np.linalg.det(A)
    C = cofactors(A)
    return np.einsum('...j,...j->...', A[..., 0, :], C[..., 0, :])

def inv(A):
    """Inverses of an array of square matrices by the adjugate formula.

    Singular matrices yield `inf`/`nan` entries instead of an exception."""
    n = A.shape[-1]
    if n > 3:
        return np.linalg.pinv(A)
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.swapaxes(cofactors(A), -1, -2) / det(A)[..., None, None]

def pinv(J):
    """Generalized inverses of an array of full-rank `m x n` matrices:
    `(JᵀJ)⁻¹Jᵀ` for `m >= n` and `Jᵀ(JJᵀ)⁻¹` otherwise."""
    m, n = J.shape[-2:]
    Jt = np.swapaxes(J, -1, -2)
    with np.errstate(divide='ignore', invalid='ignore'):
        if m == n:
            return inv(J)
        elif m > n:
            return np.matmul(inv(np.matmul(Jt, J)), Jt)
        else:
            return np.matmul(Jt, inv(np.matmul(J, Jt)))

def measure(J):
    """Volume element `sqrt(det(JᵀJ))` of an array of Jacobians."""
    m, n = J.shape[-2:]
    if m == n:
        return np.abs(det(J))
    Jt = np.swapaxes(J, -1, -2)
    with np.errstate(invalid='ignore'):
        return np.sqrt(det(np.matmul(Jt, J)))

def unscaled_normal(J):
    """Normal vectors of codimension-1 manifolds, length equal to the measure."""
    m, n = J.shape[-2:]
    if m == 2 and n == 1:     # line integral
        return np.stack((-J[..., 1, 0], J[..., 0, 0]), axis=-1)
    elif m == 3 and n == 2:   # surface integral
        return np.cross(J[..., :, 0], J[..., :, 1])
    else:
        raise ValueError('do not know how to compute normal vector for Jacobian shape %s' % ((m, n),))

def outer_normal(J, axis_xyz, side):
    """Outer normals on a boundary side of a volumetric map (square `J`).

    The vector `±|det J| J^{-T} e_k` is computed from the cofactor matrix, so its
    length is the surface measure of the boundary and singular Jacobians do not
    cause a division."""
    sgn = 1.0 if side == 1 else -1.0
    return sgn * np.sign(det(J))[..., None] * cofactors(J)[..., :, axis_xyz]

################################################################################

def _guarded(name, flag):
    def getter(self):
        if not (self.flags & flag):
            raise RuntimeError('%s was not requested for %s; missing parse()?'
                    % (name, self.source))
        return self._arrays[name]
    getter.__doc__ = 'Per-point %s; available if %s was requested.' % (name, flag)
    return property(getter)


class FieldData:
    """Data of one source on the current element.

    For a geometry map with parameter dimension `s` and target dimension `t`,
    evaluated at `nq` points: `values (nq, t)`, `jac (nq, t, s)`, `deriv2 (nq,
    ncomb, t)`, `measure (nq,)`, `jac_inv (nq, s, t)` and `outer_normal (nq, t)`.

    For a basis with `N` functions active on the element: `actives (N,)`,
    `values (nq, N)`, `derivs (nq, N, s)` and `deriv2 (nq, N, ncomb)`.

    Accessing data which was not requested raises a `RuntimeError`.
    """
    values = _guarded('values', Need.VALUE)
    jac = _guarded('jac', Need.DERIV)
    derivs = _guarded('derivs', Need.DERIV)
    deriv2 = _guarded('deriv2', Need.DERIV2)
    measure = _guarded('measure', Need.MEASURE)
    jac_inv = _guarded('jac_inv', Need.GRAD_TRANSFORM)
    actives = _guarded('actives', Need.ACTIVE)
    outer_normal = _guarded('outer_normal', Need.OUTER_NORMAL)

    def __init__(self, source, flags, **arrays):
        self.source = source
        self.flags = Need(flags)
        self._arrays = arrays

    @property
    def num_points(self):
        return self._arrays['num_points']


def eval_geometry_data(source, geo, points, flags, side=None):
    """Evaluate the data of a geometry map `geo` requested by `flags`.

    `side` is a pair `(axis_zyx, side)` when evaluating on a boundary side.
    """
    flags = Need(flags)
    if flags & (Need.MEASURE | Need.GRAD_TRANSFORM | Need.OUTER_NORMAL):
        flags |= Need.DERIV
    derivs = geo.pointwise_derivs(points, derivative_order(flags))
    arrays = dict(num_points=points.shape[0], values=derivs[0])
    if flags & Need.DERIV:
        J = derivs[1]
        arrays['jac'] = J
        if flags & Need.MEASURE:
            arrays['measure'] = measure(J)
        if flags & Need.GRAD_TRANSFORM:
            arrays['jac_inv'] = pinv(J)
        if flags & Need.OUTER_NORMAL:
            t, s = J.shape[-2:]
            if t == s:
                if side is None:
                    raise RuntimeError('outer normal of %s requested outside of a boundary side' % (source,))
                axis, sd = side
                arrays['outer_normal'] = outer_normal(J, s - 1 - axis, sd)
            else:
                arrays['outer_normal'] = unscaled_normal(J)
    if flags & Need.DERIV2:
        arrays['deriv2'] = derivs[2]
    return FieldData(source, flags | Need.VALUE, **arrays)

def eval_basis_data(source, basis, points, flags):
    """Evaluate the active functions of `basis` and the requested derivatives."""
    flags = Need(flags) | Need.ACTIVE | Need.VALUE
    if flags & Need.GRAD_TRANSFORM:
        flags |= Need.DERIV
    order = derivative_order(flags)
    actives, vals = basis.eval_derivs(points, order)
    N = len(actives)
    assert vals[0].shape == (points.shape[0], N), \
        'number of active functions (%d) does not match evaluated values %s' % (N, vals[0].shape)
    arrays = dict(num_points=points.shape[0], actives=actives, values=vals[0])
    if order >= 1:
        assert vals[1].shape[1] == N, 'derivative columns do not match active functions'
        arrays['derivs'] = vals[1]
    if order >= 2:
        assert vals[2].shape[1:] == (N, len(deriv2_pairs(basis.sdim)))
        arrays['deriv2'] = vals[2]
    return FieldData(source, flags, **arrays)

################################################################################

class FlagRegistry:
    """Collects the union of evaluation flags per source during parsing."""
    def __init__(self):
        self._flags = {}
        self._sources = {}

    def add(self, source, flags):
        key = id(source)
        self._sources[key] = source
        self._flags[key] = self._flags.get(key, Need.NONE) | Need(flags)

    def flags(self, source):
        return self._flags.get(id(source), Need.NONE)

    def sources(self):
        """Sources in evaluation order (geometry before spaces before fields)."""
        return sorted(self._sources.values(), key=lambda s: s.eval_priority)

    def __contains__(self, source):
        return id(source) in self._sources

    def __len__(self):
        return len(self._sources)

    def copy(self):
        reg = FlagRegistry()
        reg._flags = dict(self._flags)
        reg._sources = dict(self._sources)
        return reg


class Scratch:
    """Memo of evaluated sub-expressions at one quadrature node.

    Owned by an :class:`EvalContext`; never shared between contexts.
    """
    def __init__(self):
        self.node = None
        self.values = {}

    def reset(self):
        self.node = None
        self.values.clear()

    def at(self, k):
        if k != self.node:
            self.values.clear()
            self.node = k
        return self.values


class EvalContext:
    """Evaluation state for the current element.

    Args:
        registry (:class:`FlagRegistry`): the sources and flags to evaluate
    """
    def __init__(self, registry):
        self.registry = registry
        self.scratch = Scratch()
        self._data = {}
        self.patch = None
        self.points = None
        self.side = None

    def evaluate_at(self, patch, points, side=None):
        """Evaluate all registered sources at the given points of `patch`.

        `side` is the pair `(axis, side)` if the points lie on a boundary side.
        """
        self._data = {}
        self.scratch.reset()
        self.patch = patch
        self.points = np.atleast_2d(points)
        self.side = side
        for src in self.registry.sources():
            self._data[id(src)] = src.compute_data(self, self.registry.flags(src))

    @property
    def num_points(self):
        return self.points.shape[0]

    def data(self, source):
        """Return the :class:`FieldData` of `source` on the current element."""
        try:
            return self._data[id(source)]
        except KeyError:
            raise RuntimeError('no data for %s on the current element; was it parsed?' % (source,))
