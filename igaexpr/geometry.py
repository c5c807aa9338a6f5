"""Geometry maps and parametric functions.

Besides the tensor product :class:`.BSplineFunc`, geometries may be given by
user-defined callables (:class:`UserFunction`), compositions of functions
(:class:`ComposedFunction`), or restrictions to a boundary side
(:class:`BoundaryFunction`). All of them implement `pointwise_derivs(points,
order)` which is the only evaluation interface the assemblers rely on.
"""
import functools

import numpy as np

from . import bspline
from . import utils
from .bspline import BSplineFunc, deriv2_pairs, unpack_deriv2, pack_deriv2


class UserFunction(bspline._BaseGeoFunc):
    """A function (supporting the same basic protocol as :class:`.BSplineFunc`) which is given
    in terms of a user-defined callable.

    Args:
        f (callable): a function of `d` variables (xyz order); may be scalar or
            vector-valued and must accept arrays of coordinates
        support: a sequence of `d` pairs of the form `(lower,upper)` describing
            the support of the function (zyx order)
        dim (int): the dimension of the function output; by default, is
            automatically determined by calling `f`
        jac (callable): optionally, a function evaluating the `dim x d` Jacobian
            matrix at a single point
        deriv2 (callable): optionally, a function evaluating the packed second
            derivatives (`ncomb x dim`, see :func:`.deriv2_pairs`) at a single point

    The :attr:`sdim` attribute is determined from the length of `support`.
    """
    def __init__(self, f, support, dim=None, jac=None, deriv2=None):
        self.f = f
        self.support = tuple(tuple(s) for s in support)
        self.sdim = len(self.support)
        self.jac = jac
        self.deriv2 = deriv2
        if dim is None:
            x0 = np.array([[lo for (lo,hi) in reversed(self.support)]])
            shape = utils.eval_at_points(f, x0).shape[1:]
            self._scalar = (len(shape) == 0)
            dim = 1 if self._scalar else shape[0]
        self.dim = dim

    def pointwise_derivs(self, points, order=0):
        points = np.atleast_2d(np.asarray(points, dtype=float))
        n = points.shape[0]
        result = [utils.eval_at_points(self.f, points).reshape((n, self.dim))]
        if order >= 1:
            assert self.jac is not None, 'Jacobian not specified in UserFunction'
            J = np.array([np.asarray(self.jac(*x), dtype=float) for x in points])
            result.append(J.reshape((n, self.dim, self.sdim)))
        if order >= 2:
            assert self.deriv2 is not None, 'second derivatives not specified in UserFunction'
            D = np.array([np.asarray(self.deriv2(*x), dtype=float) for x in points])
            result.append(D.reshape((n, len(deriv2_pairs(self.sdim)), self.dim)))
        return result


class ComposedFunction(bspline._BaseGeoFunc):
    def __init__(self, geo2, geo1):
        """Composition of two functions.

        `geo(x) = geo2(geo1(x))`
        """
        assert geo1.dim == geo2.sdim
        self.geo1 = geo1
        self.geo2 = geo2
        self.sdim = geo1.sdim
        self.dim = geo2.dim
        self._scalar = geo2.is_scalar()

    @property
    def support(self):
        return self.geo1.support

    def pointwise_derivs(self, points, order=0):
        """Evaluate values and derivatives of the composition by the chain rule."""
        inner = self.geo1.pointwise_derivs(points, order)
        outer = self.geo2.pointwise_derivs(inner[0], order)
        result = [outer[0]]
        if order >= 1:
            result.append(np.matmul(outer[1], inner[1]))
        if order >= 2:
            J1 = inner[1]                                               # n x d1 x s
            H1 = unpack_deriv2(np.swapaxes(inner[2], 1, 2), self.sdim)  # n x d1 x s x s
            H2 = unpack_deriv2(np.swapaxes(outer[2], 1, 2), self.geo2.sdim)  # n x d2 x d1 x d1
            H = (np.einsum('nmu,nuab->nmab', outer[1], H1)
                 + np.einsum('nmuw,nua,nwb->nmab', H2, J1, J1))
            result.append(np.swapaxes(pack_deriv2(H), 1, 2))
        return result

    def boundary(self, bdspec):
        """Return one side of the boundary as a :class:`ComposedFunction`."""
        return ComposedFunction(self.geo2, self.geo1.boundary(bdspec))


class BoundaryFunction(bspline._BaseGeoFunc):
    """A function which represents the evaluation of the given function `f` at
    one side of its boundary, thus reducing `sdim` by one.
    """
    def __init__(self, f, bdspec):
        self.f = f
        self.axis, self.side = bspline.parse_side(bdspec, f.sdim)
        self.fixed_coord = f.support[self.axis][self.side]
        supp = list(f.support)
        del supp[self.axis]
        self.support = tuple(supp)
        self.dim = f.dim
        self.sdim = f.sdim - 1
        self._scalar = f.is_scalar()
        self._normal_xyz = f.sdim - 1 - self.axis

    def _full_points(self, points):
        points = np.atleast_2d(np.asarray(points, dtype=float))
        return np.insert(points, self._normal_xyz, self.fixed_coord, axis=1)

    def pointwise_derivs(self, points, order=0):
        full = self.f.pointwise_derivs(self._full_points(points), order)
        j = self._normal_xyz
        result = [full[0]]
        if order >= 1:
            # drop the partial derivatives corresponding to the normal direction
            result.append(np.delete(full[1], j, axis=2))
        if order >= 2:
            H = unpack_deriv2(np.swapaxes(full[2], 1, 2), self.f.sdim)
            H = np.delete(np.delete(H, j, axis=2), j, axis=3)
            result.append(np.swapaxes(pack_deriv2(H), 1, 2))
        return result


class ComposedBasis:
    """The basis `{φ_i ∘ S}` obtained by composing each function of a tensor
    product basis with a parametrization `S` of its parameter domain.

    Structural queries (size, elements, boundary indices, ...) are those of
    the underlying basis; evaluation uses the chain rule, e.g.
    `∇(φ∘S)(ξ) = J_S(ξ)ᵀ ∇φ(S(ξ))`.

    Args:
        S: a function with `sdim == dim == basis.sdim` which maps the
            parameter domain into itself
        basis: a :class:`.TensorBasis`
    """
    def __init__(self, S, basis):
        assert S.sdim == S.dim == basis.sdim, 'composition must map the parameter domain into itself'
        self.S = S
        self.basis = basis

    def __getattr__(self, name):
        # structural information is that of the underlying basis
        if name in ('S', 'basis'):
            raise AttributeError(name)
        return getattr(self.basis, name)

    def active(self, points):
        return self.eval_derivs(points, 0)[0]

    def eval_derivs(self, points, order=0):
        sdim = self.basis.sdim
        S = self.S.pointwise_derivs(points, order)
        actives, vals = self.basis.eval_derivs(S[0], order)
        result = [vals[0]]
        if order >= 1:
            result.append(np.einsum('qnu,qus->qns', vals[1], S[1]))
        if order >= 2:
            J = S[1]
            Hphi = unpack_deriv2(vals[2], sdim)                        # q x n x u x w
            HS = unpack_deriv2(np.swapaxes(S[2], 1, 2), sdim)          # q x u x a x b
            H = (np.einsum('qnuw,qua,qwb->qnab', Hphi, J, J)
                 + np.einsum('qnu,quab->qnab', vals[1], HS))
            result.append(pack_deriv2(H))
        return actives, result


################################################################################
# Factories
################################################################################

def line_segment(x0, x1, intervals=1, support=None):
    """Return a :class:`.BSplineFunc` which describes the line between the
    vectors `x0` and `x1`.

    If specified, `support` describes the interval in which the function is
    supported; by default, it is the interval (0,1).

    If specified, `intervals` is the number of intervals in the underlying
    linear spline space. By default, the minimal spline space with 2 dofs is
    used.
    """
    if np.isscalar(x0): x0 = [x0]
    if np.isscalar(x1): x1 = [x1]
    assert len(x0) == len(x1), 'Vectors must have same dimension'
    a, b = (0.0, 1.0) if support is None else support
    # produce 1D arrays
    x0 = np.array(x0, dtype=float).ravel()
    x1 = np.array(x1, dtype=float).ravel()
    # interpolate linearly
    S = np.linspace(0.0, 1.0, intervals+1).reshape((intervals+1, 1))
    coeffs = (1-S) * x0 + S * x1
    return BSplineFunc(bspline.make_knots(1, a, b, intervals), coeffs)

def tensor_product(G1, G2, *Gs):
    r"""Compute the tensor product of two or more vector-valued :class:`.BSplineFunc`
    functions.  This means that given two input functions

    .. math:: G_1(y), G_2(x),

    it returns a new function

    .. math:: G(x,y) = G_2(x) \times G_1(y),

    where :math:`\times` means that vectors are joined together.
    """
    if Gs != ():
        return tensor_product(G1, tensor_product(G2, *Gs))
    Cs = tuple(G.coeffs if not G.is_scalar() else G.coeffs[..., None] for G in (G1, G2))
    SD1, SD2 = (C.shape[:G.sdim] for (C,G) in zip(Cs, (G1, G2)))
    VD1, VD2 = (C.shape[G.sdim:] for (C,G) in zip(Cs, (G1, G2)))
    C1 = np.broadcast_to(np.reshape(Cs[0], SD1 + len(SD2) * (1,) + VD1), SD1 + SD2 + VD1)
    C2 = np.broadcast_to(np.reshape(Cs[1], len(SD1) * (1,) + SD2 + VD2), SD1 + SD2 + VD2)
    # NB: coefficients are in XY order, but coordinate axes in YX order!
    C = np.concatenate((C2, C1), axis=-1)
    return BSplineFunc(G1.kvs + G2.kvs, C)

def unit_cube(dim=3, num_intervals=1):
    """The `dim`-dimensional unit cube with `num_intervals` intervals
    per coordinate direction.

    Returns:
        :class:`.BSplineFunc` geometry
    """
    if dim == 1:
        return line_segment(0.0, 1.0, intervals=num_intervals)
    return functools.reduce(tensor_product, dim * (line_segment(0.0, 1.0, intervals=num_intervals),))

def unit_square(num_intervals=1):
    """Unit square with given number of intervals per direction.

    Returns:
        :class:`.BSplineFunc` 2D geometry
    """
    return unit_cube(dim=2, num_intervals=num_intervals)

def identity(extents):
    """Identity mapping (using linear splines) over a d-dimensional box
    given by `extents` as a list of (min,max) pairs or of :class:`.KnotVector`
    (zyx order).

    Returns:
        :class:`.BSplineFunc` geometry
    """
    extents = [
        ex.support() if isinstance(ex, bspline.KnotVector) else ex
        for ex in extents
    ]
    segs = [line_segment(ex[0], ex[1], support=ex) for ex in extents]
    if len(segs) == 1:
        return segs[0]
    return functools.reduce(tensor_product, segs)

def bilinear_patch(P):
    """Bilinear quadrilateral with the given corners.

    Args:
        P: array of shape `(dim, 4)` whose columns are the lower left, lower
            right, upper left and upper right corner

    Returns:
        :class:`.BSplineFunc` 2D geometry
    """
    P = np.asarray(P, dtype=float)
    kv = bspline.make_knots(1, 0.0, 1.0, 1)
    coeffs = np.array([[P[:, 0], P[:, 1]],
                       [P[:, 2], P[:, 3]]])
    return BSplineFunc((kv, kv), coeffs)

def quarter_annulus(r1=1.0, r2=2.0):
    """A B-spline approximation of a quarter annulus in the first quadrant.

    Args:
        r1 (float): inner radius
        r2 (float): outer radius

    Returns:
        :class:`.BSplineFunc` 2D geometry
    """
    kvx = bspline.make_knots(1, 0.0, 1.0, 1)
    kvy = bspline.make_knots(2, 0.0, 1.0, 1)

    coeffs = np.array([
            [[ r1, 0.0],
             [ r2, 0.0]],
            [[ r1,  r1],
             [ r2,  r2]],
            [[0.0,  r1],
             [0.0,  r2]],
    ])
    return BSplineFunc((kvy,kvx), coeffs)

def helix(r=1.0, h=1.0, turns=1.0):
    """A circular helix with radius `r` and height `h` over the parameter interval (0,1).

    Returns:
        :class:`UserFunction` curve with `sdim=1`, `dim=3`
    """
    w = 2 * np.pi * turns
    return UserFunction(
        lambda t: (r * np.cos(w*t), r * np.sin(w*t), h * t),
        support=((0.0, 1.0),),
        jac=lambda t: [[-r*w*np.sin(w*t)], [r*w*np.cos(w*t)], [h]],
        deriv2=lambda t: [[-r*w*w*np.cos(w*t), -r*w*w*np.sin(w*t), 0.0]])
