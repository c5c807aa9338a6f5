# -*- coding: utf-8 -*-
"""Functions and classes for B-spline basis functions.

Tensor product bases are represented by tuples of :class:`KnotVector`
instances in zyx order, i.e., the last knot vector describes the x direction.
Points in the parameter domain are passed as arrays of shape `(n, sdim)`
whose columns are in xyz order.
"""
import enum
import itertools
from collections import namedtuple

import numpy as np
import scipy.sparse
import scipy.sparse.linalg


class BasisKind(enum.Enum):
    """Representation of a basis; selects the interface matching algorithm."""
    TENSOR = 1
    HIERARCHICAL = 2


Element = namedtuple('Element', ['index', 'lower', 'upper'])
Element.__doc__ = """An integration element: a box `[lower, upper]` in the
parameter domain (corners in xyz order). For boundary elements, `lower` and
`upper` coincide in the normal direction."""


def _parse_bdspec(bdspec, dim):
    if bdspec == 'left':
        bd = ((dim - 1, 0),)
    elif bdspec == 'right':
        bd = ((dim - 1, 1),)
    elif bdspec == 'bottom':
        bd = ((dim - 2, 0),)
    elif bdspec == 'top':
        bd = ((dim - 2, 1),)
    elif bdspec == 'front':
        bd = ((dim - 3, 0),)
    elif bdspec == 'back':
        bd = ((dim - 3, 1),)
    else:
        bd = bdspec
        if len(bd) == 2 and all(np.isscalar(t) for t in bd):
            bd = (tuple(bd),)       # a single (axis, side) pair
        bd = tuple(tuple(b) for b in bd)
        if not all((side in (0,1) for _, side in bd)):
            raise ValueError('invalid bdspec ' + str(bd))
        if any(( ax < 0 or ax >= dim for ax, _ in bd)):
            raise ValueError('invalid bdspec %s for space of dimension %d'
                % (bdspec, dim))
    if any(ax < 0 for ax, _ in bd):
        raise ValueError('invalid bdspec %s for space of dimension %d'
            % (bdspec, dim))
    return bd

def parse_side(bdspec, dim):
    """Convert a bdspec describing a single side into a pair `(axis, side)` (zyx axis)."""
    bd = _parse_bdspec(bdspec, dim)
    if len(bd) != 1:
        raise ValueError('expected a single boundary side, got %s' % (bdspec,))
    return bd[0]

def deriv2_pairs(sdim):
    """Index pairs `(a,b)` (xyz axes) of the packed second derivatives.

    The order is `[∂11, ∂22, ..., ∂dd, ∂12, ∂13, ..., ∂23, ...]`.
    """
    return ([(a, a) for a in range(sdim)]
            + [(a, b) for a in range(sdim) for b in range(a+1, sdim)])

def unpack_deriv2(D2, sdim):
    """Convert packed second derivatives (`ncomb` along the last axis) into
    full symmetric Hessians (two trailing axes of length `sdim`)."""
    D2 = np.asarray(D2)
    H = np.empty(D2.shape[:-1] + (sdim, sdim))
    for i, (a, b) in enumerate(deriv2_pairs(sdim)):
        H[..., a, b] = D2[..., i]
        H[..., b, a] = D2[..., i]
    return H

def pack_deriv2(H):
    """Inverse of :func:`unpack_deriv2`."""
    sdim = H.shape[-1]
    return np.stack([H[..., a, b] for (a, b) in deriv2_pairs(sdim)], axis=-1)


class KnotVector:
    """Represents an open B-spline knot vector together with a spline degree.

    Args:
        knots (ndarray): the 1D knot vector. Should be an open knot vector,
            i.e., the first and last knot should be repeated `p+1` times.
            Interior knots may be single or repeated up to `p` times.
        p (int): the spline degree.

    This class is commonly used to represent the B-spline basis
    over the given knot vector with the given spline degree.
    The B-splines are normalized in the sense that they satisfy a
    partition of unity property.

    A more convenient way to create knot vectors is the :func:`make_knots` function.

    Attributes:
        kv (ndarray): vector of knots
        p (int): spline degree
    """

    def __init__(self, knots, p):
        """Construct an open B-spline knot vector with given `knots` and degree `p`."""
        self.kv = np.asarray(knots, dtype=float)
        # sanity check: knots should be monotonically increasing
        assert np.all(self.kv[1:] - self.kv[:-1] >= 0), 'knots should be increasing'
        self.p = p
        self._mesh = None    # knots with duplicates removed (on demand)
        self._knots_to_mesh = None   # knot indices to mesh indices (on demand)

    def __str__(self):
        return '<KnotVector p=%d sz=%d>' % (self.p, self.kv.size)

    def __repr__(self):
        return 'KnotVector(%s, %s)' % (repr(self.kv), repr(self.p))

    def __eq__(self, other):
        if self.p == other.p and len(self.kv) == len(other.kv):
            if np.allclose(self.kv, other.kv, atol=1e-8, rtol=1e-8):
                return True
        return False

    @property
    def numdofs(self):
        """Number of basis functions in a B-spline basis defined over this knot vector"""
        return self.kv.size - self.p - 1

    @property
    def numspans(self):
        """Number of nontrivial intervals in the knot vector"""
        return self.mesh.size - 1

    def copy(self):
        """Return a copy of this knot vector."""
        return KnotVector(self.kv.copy(), self.p)

    def support(self, j=None):
        """Support of the knot vector or, if `j` is passed, of the j-th B-spline"""
        if j is None:
            return (self.kv[0], self.kv[-1])
        else:
            return (self.kv[j], self.kv[j+self.p+1])

    def _ensure_mesh(self):
        """Make sure that the _mesh and _knots_to_mesh arrays are set up"""
        if self._knots_to_mesh is None:
            self._mesh, self._knots_to_mesh = np.unique(self.kv, return_inverse=True)

    @property
    def mesh(self):
        """Return the mesh, i.e., the vector of unique knots in the knot vector."""
        self._ensure_mesh()
        return self._mesh

    def mesh_support_idx_all(self):
        """Compute an integer array of size `N × 2`, where N = self.numdofs, which
        contains for each B-spline the first and last mesh index of its support.
        """
        self._ensure_mesh()
        n = self.numdofs
        startend = np.stack((np.arange(0,n), np.arange(self.p+1, n+self.p+1)), axis=1)
        return self._knots_to_mesh[startend]

    def findspans(self, u):
        """Vectorized version of :meth:`findspan`."""
        u = np.asarray(u, dtype=float)
        spans = self.kv.searchsorted(u, side='right') - 1
        return np.clip(spans, self.p, self.kv.size - self.p - 2)

    def findspan(self, u):
        """Returns an index i such that
         kv[i] <= u < kv[i+1]     (except for the boundary, where u <= kv[m-p] is allowed)
         and p <= i < len(kv) - 1 - p"""
        return int(self.findspans(np.array([u]))[0])

    def first_active(self, k):
        """Index of first active basis function in interval (kv[k], kv[k+1])"""
        return k - self.p

    def first_active_at(self, u):
        """Index of first active basis function in the interval which contains `u`."""
        return self.first_active(self.findspan(u))

    def greville(self):
        """Compute Gréville abscissae for this knot vector"""
        p = self.p
        if p == 0:
            return (self.kv[1:] + self.kv[:-1]) / 2     # cell middle points
        else:
            # running averages over p knots
            g = (np.convolve(self.kv, np.ones(p) / p))[p:-p]
            # due to rounding errors, some points may not be contained in the
            # support interval; clamp them manually to avoid problems later on
            return np.clip(g, self.kv[0], self.kv[-1])

    def refine(self, new_knots=None, mult=1):
        """Return the refinement of this knot vector by inserting `new_knots`,
        or performing uniform refinement if none are given."""
        if new_knots is None:
            mesh = self.mesh
            new_knots = (mesh[1:] + mesh[:-1]) / 2
            if mult>1:
                new_knots = np.hstack(mult*[new_knots,])
        kvnew = np.sort(np.concatenate((self.kv, new_knots)))
        return KnotVector(kvnew, self.p)


def make_knots(p, a, b, n, mult=1):
    """Create an open knot vector of degree `p` over an interval `(a,b)` with `n` knot spans.

    This automatically repeats the first and last knots `p+1` times in order
    to create an open knot vector. Interior knots are single by default, i.e., have
    maximum continuity.

    Args:
        p (int): the spline degree
        a (float): the starting point of the interval
        b (float): the end point of the interval
        n (int): the number of knot spans to divide the interval into
        mult (int): the multiplicity of interior knots

    Returns:
        :class:`KnotVector`: the new knot vector
    """
    kv = np.concatenate(
            (np.repeat(a, p+1),
             np.repeat(np.linspace(a, b, n+1)[1:-1], mult),
             np.repeat(b, p+1)))
    return KnotVector(kv, p)

################################################################################

def active_deriv(knotvec, u, numderiv):
    """Evaluate all active B-spline basis functions and their derivatives
    up to `numderiv` at the points `u`.

    Returns an array with shape (numderiv+1, p+1) if `u` is scalar or
    an array with shape (numderiv+1, p+1, u.size) otherwise.
    """
    if np.isscalar(u):
        return active_deriv(knotvec, np.array([u]), numderiv)[:, :, 0]

    kv, p = knotvec.kv, knotvec.p
    u = np.asarray(u, dtype=float).ravel()
    n = u.size
    NDU   = np.empty((p+1, p+1, n))
    left  = np.empty((p, n))
    right = np.empty((p, n))
    result = np.zeros((numderiv+1, p+1, n))

    span = knotvec.findspans(u)

    NDU[0,0] = 1.0

    for j in range(1, p+1):
        # Compute knot splits
        left[j-1]  = u - kv[span+1-j]
        right[j-1] = kv[span+j] - u
        saved = 0.0

        for r in range(j):     # For all but the last basis functions of degree j (ndu row)
            # Strictly lower triangular part: Knot differences of distance j
            NDU[j, r] = right[r] + left[j-r-1]
            temp = NDU[r, j-1] / NDU[j, r]
            # Upper triangular part: Basis functions of degree j
            NDU[r, j] = saved + right[r] * temp  # r-th function value of degree j
            saved = left[j-r-1] * temp

        # Diagonal: j-th (last) function value of degree j
        NDU[j, j] = saved

    # copy function values into result array
    result[0] = NDU[:, -1]

    a1 = np.empty((p+1, n))
    a2 = np.empty((p+1, n))

    # derivatives of order > p vanish
    for r in range(p+1):    # loop over basis functions
        a1[0] = 1.0

        fac = p        # fac = fac(p) / fac(p-k)

        # Compute the k-th derivative of the r-th basis function
        for k in range(1, min(numderiv, p) + 1):
            rk = r - k
            pk = p - k
            d = np.zeros(n)

            if r >= k:
                a2[0] = a1[0] / NDU[pk+1, rk]
                d = a2[0] * NDU[rk, pk]

            j1 = 1 if rk >= -1  else -rk
            j2 = k-1 if r-1 <= pk else p - r

            for j in range(j1, j2+1):
                a2[j] = (a1[j] - a1[j-1]) / NDU[pk+1, rk+j]
                d = d + a2[j] * NDU[rk+j, pk]

            if r <= pk:
                a2[k] = -a1[k-1] / NDU[pk+1, r]
                d = d + a2[k] * NDU[r, pk]

            result[k, r] = d * fac
            fac *= pk          # update fac = fac(p) / fac(p-k) for next k

            # swap rows a1 and a2
            (a1,a2) = (a2,a1)

    return result

def active_ev(knotvec, u):
    """Evaluate all active B-spline basis functions at the points `u`.

    Returns an array of shape (p+1, u.size) if `u` is an array."""
    if np.isscalar(u):
        return active_ev(knotvec, np.array([u]))[:, 0]
    else:
        return active_deriv(knotvec, u, 0)[0, :]

def collocation(kv, nodes):
    """Compute collocation matrix for B-spline basis at the given interpolation nodes.

    Args:
        kv (:class:`KnotVector`): the B-spline knot vector
        nodes (array): array of nodes at which to evaluate the B-splines

    Returns:
        A Scipy CSR matrix with shape `(len(nodes), kv.numdofs)` whose entry at
        `(i,j)` is the value of the `j`-th B-spline evaluated at `nodes[i]`.
    """
    nodes = np.ascontiguousarray(nodes, dtype=float)
    values = active_ev(kv, nodes).T     # n x (p+1)
    indices = kv.findspans(nodes) - kv.p
    m, n = nodes.size, kv.numdofs       # collocation matrix size

    # compute I, J indices:
    # I: p + 1 entries per row
    I = np.repeat(np.arange(m), kv.p + 1)
    # J: arange(indices[k], indices[k] + p + 1) per row
    J = (indices[:, None] + np.arange(kv.p + 1)[None, :]).ravel()

    return scipy.sparse.coo_matrix((values.ravel(), (I,J)), shape=(m,n)).tocsr()

def is_sub_space(kv1, kv2):
    """Check if the spline space of `kv1` is contained in that of `kv2`.

    Both knot vectors must have the same degree and support; every knot of
    `kv1` must occur in `kv2` with at least the same multiplicity.
    """
    if kv1.p != kv2.p or not np.allclose(kv1.support(), kv2.support()):
        return False
    u1, m1 = np.unique(kv1.kv, return_counts=True)
    for u, m in zip(u1, m1):
        if np.count_nonzero(np.isclose(kv2.kv, u)) < m:
            return False
    return True

def prolongation(kv1, kv2):
    """Compute prolongation matrix between B-spline bases.

    Given two B-spline bases, where the first spans a subspace of the second
    one, compute the matrix which maps spline coefficients from the first
    basis to the coefficients of the same function in the second basis.

    Args:
        kv1 (:class:`KnotVector`): source B-spline basis knot vector
        kv2 (:class:`KnotVector`): target B-spline basis knot vector

    Returns:
        csr_matrix: sparse matrix which prolongs coefficients from `kv1` to `kv2`
    """
    g = kv2.greville()
    C1 = collocation(kv1, g).toarray()
    C2 = collocation(kv2, g).tocsc()
    P = scipy.sparse.linalg.spsolve(C2, C1)
    P = np.asarray(P).reshape((kv2.numdofs, kv1.numdofs))
    # prune matrix
    P[np.abs(P) < 1e-14] = 0.0
    return scipy.sparse.csr_matrix(P)

################################################################################

def _tp_combine(factors):
    """Combine per-axis arrays of shape `(n, k_d)` (zyx order) into a tensor
    product array of shape `(n, prod k_d)` with the last axis running fastest."""
    result = factors[0]
    for f in factors[1:]:
        result = (result[:, :, None] * f[:, None, :]).reshape(result.shape[0], -1)
    return result

def _tp_indices(indices, sizes):
    """Flat tensor indices from per-axis index arrays of shape `(n, k_d)`."""
    result = indices[0]
    for idx, sz in zip(indices[1:], sizes[1:]):
        result = (result[:, :, None] * sz + idx[:, None, :]).reshape(result.shape[0], -1)
    return result

def _scatter_active(flat, local, actives):
    """Scatter pointwise local values `(n, L, ...)` belonging to the flat
    indices `flat (n, L)` into an array `(n, len(actives), ...)`."""
    n = flat.shape[0]
    cols = np.searchsorted(actives, flat)
    out = np.zeros((n, len(actives)) + local.shape[2:])
    out[np.arange(n)[:, None], cols] = local
    return out

def tp_eval_derivs(kvs, points, order=0):
    """Evaluate all tensor product B-splines over `kvs` which are active at some of
    the `points`, together with their derivatives up to `order` (at most 2).

    Args:
        kvs: tuple of :class:`KnotVector` (zyx order)
        points (ndarray): array of shape `(n, sdim)` (xyz order)
        order (int): maximum derivative order

    Returns:
        a pair `(actives, values)`: `actives` is the sorted array of flat indices of
        the active functions, `values` a list with the values `(n, N)`, the gradients
        `(n, N, sdim)` and the packed second derivatives `(n, N, ncomb)`, up to
        the requested order.
    """
    sdim = len(kvs)
    points = np.atleast_2d(np.asarray(points, dtype=float))
    assert points.shape[1] == sdim, 'points have wrong dimension'
    sizes = tuple(kv.numdofs for kv in kvs)

    first, D = [], []
    for d, kv in enumerate(kvs):
        u = points[:, sdim - 1 - d]         # x is the last knot vector
        first.append(kv.findspans(u) - kv.p)
        D.append(np.transpose(active_deriv(kv, u, order), (0, 2, 1)))   # (order+1, n, p+1)

    local_idx = [f[:, None] + np.arange(kv.p + 1)[None, :] for f, kv in zip(first, kvs)]
    flat = _tp_indices(local_idx, sizes)
    actives = np.unique(flat)

    def deriv_orders(xyz_orders):
        # combine 1D derivatives; xyz_orders[j] is the derivative order in direction j
        return _tp_combine([D[d][xyz_orders[sdim - 1 - d]] for d in range(sdim)])

    result = [_scatter_active(flat, deriv_orders(sdim * (0,)), actives)]
    if order >= 1:
        grads = []
        for j in range(sdim):
            o = [0] * sdim
            o[j] = 1
            grads.append(deriv_orders(o))
        result.append(_scatter_active(flat, np.stack(grads, axis=-1), actives))
    if order >= 2:
        hess = []
        for (a, b) in deriv2_pairs(sdim):
            o = [0] * sdim
            o[a] += 1
            o[b] += 1
            hess.append(deriv_orders(o))
        result.append(_scatter_active(flat, np.stack(hess, axis=-1), actives))
    return actives, result


class TensorBasis:
    """A tensor product B-spline basis.

    Args:
        kvs (seq): tuple of :class:`KnotVector` (zyx order)
    """
    kind = BasisKind.TENSOR

    def __init__(self, kvs):
        if isinstance(kvs, KnotVector):
            kvs = (kvs,)
        self.kvs = tuple(kvs)
        self.sdim = len(self.kvs)
        self.shape = tuple(kv.numdofs for kv in self.kvs)
        self.size = int(np.prod(self.shape))

    def __repr__(self):
        return 'TensorBasis(%s)' % (self.kvs,)

    def degree(self, j):
        """Spline degree in the xyz direction `j`."""
        return self.kvs[self.sdim - 1 - j].p

    @property
    def max_degree(self):
        return max(kv.p for kv in self.kvs)

    @property
    def support(self):
        """Parameter domain as a sequence of `(lower,upper)` pairs in zyx order."""
        return tuple(kv.support() for kv in self.kvs)

    def refine(self):
        """Return the uniformly refined basis."""
        return TensorBasis(tuple(kv.refine() for kv in self.kvs))

    def tensor_index(self, i):
        return np.unravel_index(i, self.shape)

    def flat_index(self, multi):
        return np.ravel_multi_index(tuple(multi), self.shape)

    def elements(self):
        """Generate all elements in a fixed order (x fastest)."""
        meshes = [kv.mesh for kv in self.kvs]
        for k, idx in enumerate(itertools.product(*(range(len(m) - 1) for m in meshes))):
            lower = np.array([meshes[d][idx[d]] for d in reversed(range(self.sdim))])
            upper = np.array([meshes[d][idx[d] + 1] for d in reversed(range(self.sdim))])
            yield Element(k, lower, upper)

    def num_elements(self):
        return int(np.prod([kv.numspans for kv in self.kvs]))

    def boundary_elements(self, bdspec):
        """Generate the elements of one side of the boundary as degenerate boxes."""
        ax, side = parse_side(bdspec, self.sdim)
        j = self.sdim - 1 - ax          # xyz direction of the normal
        value = self.kvs[ax].support()[side]
        for el in self.elements():
            if el.lower[j] == self.kvs[ax].mesh[-2 if side else 0]:
                lower, upper = el.lower.copy(), el.upper.copy()
                lower[j] = upper[j] = value
                yield Element(el.index, lower, upper)

    def boundary_indices(self, bdspec):
        """Flat indices of the basis functions which are nonzero on the given side."""
        bd = _parse_bdspec(bdspec, self.sdim)
        slices = [slice(None)] * self.sdim
        for ax, side in bd:
            slices[ax] = -side      # 0 or -1
        return np.arange(self.size).reshape(self.shape)[tuple(slices)].ravel()

    def corner_indices(self):
        """Flat indices of the functions which are interpolatory at the corners."""
        corners = itertools.product(*((0, n - 1) for n in self.shape))
        return np.array(sorted(set(int(self.flat_index(c)) for c in corners)))

    def active(self, points):
        return tp_eval_derivs(self.kvs, points, 0)[0]

    def eval_derivs(self, points, order=0):
        """Evaluate the active basis functions and their derivatives at `points`.

        See :func:`tp_eval_derivs` for the output format.
        """
        return tp_eval_derivs(self.kvs, points, order)

################################################################################

def _as_points(x, sdim):
    """Combine coordinate arrays (xyz order) into an `(n, sdim)` point array."""
    x = np.broadcast_arrays(*(np.asarray(t, dtype=float) for t in x))
    shape = x[0].shape
    return np.stack([t.ravel() for t in x], axis=-1), shape

class _BaseGeoFunc:
    def __call__(self, *x):
        return self.eval(*x)

    def eval(self, *x):
        """Evaluate the function at a single point or at arrays of points.

        Args:
            *x: the coordinates of the point(s), in xyz order
        """
        assert len(x) == self.sdim, 'wrong number of coordinates'
        pts, shape = _as_points(x, self.sdim)
        vals = self.pointwise_derivs(pts, 0)[0]
        vals = vals.reshape(shape + self.output_shape())
        if vals.shape == ():
            vals = vals.item()
        return vals

    def output_shape(self):
        return () if self._scalar else (self.dim,)

    _scalar = False

    def is_scalar(self):
        """Returns True if the function is scalar-valued."""
        return len(self.output_shape()) == 0

    def jacobian(self, *x):
        """Evaluate the Jacobian (`dim x sdim`) at a single point (xyz order)."""
        pts = np.array([x], dtype=float)
        return self.pointwise_derivs(pts, 1)[1][0]

    def bounding_box(self, grid=1):
        """Compute a bounding box for the image of this geometry.

        By default, only the corners are taken into account. By choosing
        `grid > 1`, a finer grid can be used (for non-convex geometries).

        Returns:
            a tuple of `(lower,upper)` limits per dimension (in XY order)
        """
        supp = tuple(reversed(self.support))    # xyz order
        axes = [np.linspace(s[0], s[1], grid+1) for s in supp]
        pts = np.stack([g.ravel() for g in np.meshgrid(*axes, indexing='ij')], axis=-1)
        X = self.pointwise_derivs(pts, 0)[0]
        return tuple((X[:, d].min(), X[:, d].max()) for d in range(self.dim))

    def boundary(self, bdspec):
        """Return one side of the boundary as a function with `sdim` reduced by one.

        Args:
            bdspec: the side of the boundary to return

        Returns:
            a function with the same `dim` as this function
        """
        from .geometry import BoundaryFunction
        return BoundaryFunction(self, bdspec)

class BSplineFunc(_BaseGeoFunc):
    """Any function that is given in terms of a tensor product B-spline basis with coefficients.

    Arguments:
        kvs (seq): tuple of `d` :class:`KnotVector`.
        coeffs (ndarray): coefficient array

    `kvs` represents a tensor product B-spline basis, where the *i*-th
    :class:`KnotVector` describes the B-spline basis in the *i*-th
    coordinate direction (zyx order).

    `coeffs` is the array of coefficients with respect to this tensor product basis.
    The length of its first `d` axes must match the number of degrees of freedom
    in the corresponding :class:`KnotVector`.
    A trailing axis, if present, determines the output dimension of the function.
    If there is no trailing axis, the function is scalar-valued.

    For convenience, if `coeffs` is a vector, it is reshaped to the proper
    size for the tensor product basis. The result is a scalar-valued function.

    Attributes:
        kvs (seq): the knot vectors representing the tensor product basis
        coeffs (ndarray): the coefficients for the function or geometry
        sdim (int): dimension of the parameter domain
        dim (int): dimension of the output of the function
    """
    def __init__(self, kvs, coeffs):
        if isinstance(kvs, KnotVector):
            kvs = (kvs,)
        self.kvs = tuple(kvs)
        self.sdim = len(kvs)    # source dimension
        self.basis = TensorBasis(self.kvs)

        N = self.basis.shape
        coeffs = np.asanyarray(coeffs, dtype=float)
        if coeffs.ndim == 1:
            assert coeffs.shape[0] == np.prod(N), "Wrong length of coefficient vector"
            coeffs = coeffs.reshape(N)
        assert N == coeffs.shape[:self.sdim], "Wrong shape of coefficients"
        assert coeffs.ndim <= self.sdim + 1, "Only scalar or vector functions are supported"
        self.coeffs = coeffs

        # determine target dimension
        self._scalar = (coeffs.ndim == self.sdim)
        self.dim = 1 if self._scalar else coeffs.shape[-1]

    @property
    def support(self):
        """Return a sequence of pairs `(lower,upper)`, one per source dimension
        (zyx order), which describe the extent of the support in the parameter space."""
        return self.basis.support

    def coeff_matrix(self):
        """The coefficients as an array of shape `(numdofs, dim)`."""
        return self.coeffs.reshape((self.basis.size, self.dim))

    def pointwise_derivs(self, points, order=0):
        """Evaluate the function and its derivatives at an unstructured list of points.

        Args:
            points (ndarray): array of shape `(n, sdim)` (xyz order)
            order (int): maximum derivative order (0, 1 or 2)

        Returns:
            list containing the values `(n, dim)`, the Jacobians `(n, dim, sdim)`
            and the packed second derivatives `(n, ncomb, dim)`, up to `order`
        """
        actives, vals = self.basis.eval_derivs(points, order)
        C = self.coeff_matrix()[actives]
        result = [vals[0].dot(C)]
        if order >= 1:
            result.append(np.einsum('qns,nd->qds', vals[1], C))
        if order >= 2:
            result.append(np.einsum('qnc,nd->qcd', vals[2], C))
        return result

    def boundary(self, bdspec):
        """Return one side of the boundary as a :class:`BSplineFunc`.

        Args:
            bdspec: the side of the boundary to return

        Returns:
            :class:`BSplineFunc`: representation of the boundary side;
            has :attr:`sdim` reduced by 1 and the same :attr:`dim` as this function
        """
        bdspec = _parse_bdspec(bdspec, self.sdim)
        axis, sides = tuple(ax for ax, _ in bdspec), tuple(-idx for _, idx in bdspec)

        slices = self.sdim * [slice(None)]
        for ax, idx in zip(axis, sides):
            slices[ax] = idx
        coeffs = self.coeffs[tuple(slices)]
        kvs = list(self.kvs)
        for ax in sorted(axis,reverse=True):
            del kvs[ax]
        return BSplineFunc(kvs, coeffs)

    def copy(self):
        """Return a copy of this geometry."""
        return BSplineFunc(
                tuple(kv.copy() for kv in self.kvs),
                self.coeffs.copy())

    def translate(self, offset):
        """Return a version of this geometry translated by the specified offset."""
        return BSplineFunc(self.kvs, self.coeffs + offset)

    def scale(self, factor):
        """Scale all control points either by a scalar factor or componentwise by
        a vector and return the resulting new function.
        """
        return BSplineFunc(self.kvs, self.coeffs * factor)
