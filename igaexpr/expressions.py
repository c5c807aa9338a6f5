"""Symbolic expressions over geometry maps, discrete spaces and fields.

Expressions are trees of :class:`Expr` nodes. Every node knows its block
shape `(rows, cols)` and its *space role*: an expression may depend on the
basis functions of a test space (:attr:`Role.ROW`), of a trial space
(:attr:`Role.COL`), of both, or of none. Shapes and roles are inferred when
the tree is built, so ill-formed products and sums are rejected before any
quadrature loop runs.

For a typical Poisson problem, one writes::

    G = A.get_map(geo)
    u = A.get_space(basis)
    f = A.get_coeff(lambda x, y: 1.0, G)
    A.assemble(igrad(u, G) * igrad(u, G).tr() * meas(G), u * f * meas(G))

Evaluation happens in two phases. :meth:`Expr.parse` registers which data
(see :class:`.evaluation.Need`) the expression requires from which source.
After :meth:`.EvalContext.evaluate_at` has filled the data for an element,
:meth:`Expr.eval` returns the value at a quadrature node as an array with
leading axes for the active functions of the spaces involved:

=========  =======================
role       array shape
=========  =======================
NONE       `(rows, cols)`
ROW        `(nR, rows, cols)`
COL        `(nC, rows, cols)`
BOTH       `(nR, nC, rows, cols)`
=========  =======================

Here `nR` (`nC`) is the number of active functions of the row (column) space
on the current element, times its number of components.
"""
import enum
import inspect
import numbers

import numpy as np

from . import utils
from .bspline import deriv2_pairs, unpack_deriv2
from .evaluation import (Need, eval_geometry_data, eval_basis_data, FieldData,
                         pinv, inv as _inv, det as _det)


class Role(enum.IntFlag):
    """Which spaces an expression depends on."""
    NONE = 0
    ROW = 1
    COL = 2
    BOTH = 3


def _expand(v, role):
    """Insert singleton lead axes so that `v` has shape `(nR|1, nC|1, rows, cols)`."""
    if role == Role.NONE:
        return v[None, None]
    elif role == Role.ROW:
        return v[:, None]
    elif role == Role.COL:
        return v[None, :]
    return v

def _collapse(v, role):
    """Inverse of :func:`_expand`."""
    if role == Role.NONE:
        return v[0, 0]
    elif role == Role.ROW:
        return v[:, 0]
    elif role == Role.COL:
        return v[0, :]
    return v

def _component_blocks(B, c):
    """Per-function rows `B (N, m)` of a scalar basis to blocks `(c*N, c, m)` of
    the `c`-component space; block `d*N + j` has `B[j]` in row `d`."""
    N, m = B.shape
    out = np.zeros((c, N, c, m))
    for d in range(c):
        out[d, :, d, :] = B
    return out.reshape((c * N, c, m))

def _var_name(var):
    return str(var) if var is not None else '-'

def _check_roles(x, y, what):
    if ((x.row_var is not None and y.row_var is not None) or
        (x.col_var is not None and y.col_var is not None)):
        raise TypeError('space role conflict: cannot form %s of %s [%s] and %s [%s]'
                % (what, x, x.role.name, y, y.role.name))


class Expr:
    """Abstract base class which all expressions derive from.

    Attributes:
        shape: the block shape `(rows, cols)` of the expression
        row_var: the :class:`Space` whose functions index the rows of an
            assembled matrix, or `None`
        col_var: the :class:`Space` whose functions index the columns, or `None`
        scalar_valued (bool): whether the expression may scale other
            expressions coefficient-wise (see :meth:`is_scalar`)
    """
    row_var = None
    col_var = None
    scalar_valued = False
    children = ()
    __array_ufunc__ = None      # make numpy defer to our reflected operators

    def __add__(self, other):  return SumExpr(self, as_expr(other))
    def __radd__(self, other): return SumExpr(as_expr(other), self)

    def __sub__(self, other):  return SumExpr(self, as_expr(other), -1)
    def __rsub__(self, other): return SumExpr(as_expr(other), self, -1)

    def __mul__(self, other):  return ProductExpr(self, as_expr(other))
    def __rmul__(self, other): return ProductExpr(as_expr(other), self)

    def __truediv__(self, other): return DivideExpr(self, as_expr(other))
    def __rtruediv__(self, other): return DivideExpr(as_expr(other), self)

    def __pos__(self):  return self
    def __neg__(self):  return NegExpr(self)

    # convenience accessors for child nodes
    @property
    def x(self):
        """Return the first child expression."""
        return self.children[0]
    @property
    def y(self):
        """Return the second child expression."""
        return self.children[1]

    @property
    def rows(self):
        return self.shape[0]
    @property
    def cols(self):
        return self.shape[1]

    @property
    def role(self):
        r = Role.NONE
        if self.row_var is not None:
            r |= Role.ROW
        if self.col_var is not None:
            r |= Role.COL
        return r

    def is_scalar(self):
        """Returns True iff the expression is a 1x1 value which multiplies
        other expressions coefficient-wise."""
        return self.scalar_valued and self.shape == (1, 1)

    def is_space_valued(self):
        return self.role != Role.NONE

    def parse(self, reg):
        """Register the evaluation flags required by this expression in the
        :class:`.FlagRegistry` `reg`."""
        for c in self.children:
            c.parse(reg)

    def eval(self, k, ctx):
        """Evaluate the expression at the quadrature node `k` of the current
        element of the :class:`.EvalContext` `ctx`."""
        memo = ctx.scratch.at(k)
        key = id(self)
        val = memo.get(key)
        if val is None:
            val = memo[key] = self.eval_node(k, ctx)
        return val

    def eval_node(self, k, ctx):
        raise NotImplementedError('eval_node not implemented for %s' % type(self).__name__)

    def tr(self):
        """Transpose; exchanges the row and column space roles."""
        return TransposeExpr(self)

    def cwisetr(self):
        """Transpose each block, keeping the space roles."""
        return CwiseTrExpr(self)

    def nocb(self):
        """Flatten each block row-wise into a row vector."""
        return NocbExpr(self)

    def val(self):
        """Mark a 1x1 expression as a scalar which scales other expressions."""
        return ValExpr(self)

    def normalized(self):
        return NormalizedExpr(self)

    def norm(self):
        """Frobenius norm of each block."""
        return NormExpr(self)

    def sqnorm(self):
        return NormExpr(self, squared=True)

    def cross(self, other):
        """Cross product of 3-vectors."""
        return CrossExpr(self, as_expr(other))

    def ginv(self):
        """Generalized inverse of a full-rank matrix."""
        return GinvExpr(self)

    def inv(self):
        return InvExpr(self)

    def det(self):
        return DetExpr(self)

    def trace(self):
        return TraceExpr(self)

    def __str__(self):
        return '%s(%s)' % (type(self).__name__, ', '.join(str(c) for c in self.children))

    def __repr__(self):
        return '<%s %s [%s]: %s>' % (type(self).__name__, self.shape, self.role.name, self)


def as_expr(x):
    """Interpret input as an expression; useful for constants."""
    if isinstance(x, Expr):
        return x
    elif isinstance(x, numbers.Real) or isinstance(x, (np.ndarray, list, tuple)):
        return ConstExpr(x)
    else:
        raise TypeError('cannot convert %s to expression' % x)

################################################################################
# Atoms
################################################################################

class ConstExpr(Expr):
    """A constant scalar, vector (column) or matrix."""
    def __init__(self, value):
        value = np.array(value, dtype=float)
        if value.ndim == 0:
            value = value.reshape((1, 1))
            self.scalar_valued = True
        elif value.ndim == 1:
            value = value[:, None]
        elif value.ndim > 2:
            raise ValueError('constants must be scalars, vectors or matrices')
        self.value = value
        self.shape = value.shape

    def __str__(self):
        if self.scalar_valued:
            return str(self.value[0, 0])
        return 'const%s' % (self.shape,)

    def eval_node(self, k, ctx):
        return self.value


class GeometryMap(Expr):
    """A multi-patch geometry map `G`; its value is the physical point.

    Args:
        patches: a :class:`.MultiPatch`, a sequence of geometry functions, or
            a single geometry function
    """
    eval_priority = 0

    def __init__(self, patches, name='G'):
        if hasattr(patches, 'patches'):
            patches = patches.patches
        elif hasattr(patches, 'pointwise_derivs'):
            patches = [patches]
        self.patches = list(patches)
        self.name = name
        self.sdim = self.patches[0].sdim
        self.dim = self.patches[0].dim
        assert all(g.sdim == self.sdim and g.dim == self.dim for g in self.patches), \
            'all patches must have the same dimensions'
        self.shape = (self.dim, 1)

    def __str__(self):
        return self.name

    def parse(self, reg):
        reg.add(self, Need.VALUE)

    def compute_data(self, ctx, flags):
        return eval_geometry_data(self, self.patches[ctx.patch], ctx.points, flags, ctx.side)

    def eval_node(self, k, ctx):
        return ctx.data(self).values[k][:, None]


class Space(Expr):
    """A discrete space over a multi-patch basis with `dim` components.

    As an expression, its value on an element is the block of all active
    basis functions, `e_d φ_j` for the component `d` and the active scalar
    function `φ_j`, ordered component-major. A space acts as the test space
    (row role); its transpose `u.tr()` acts as the trial space.

    Degrees of freedom are numbered by a :class:`.DofMapper` which is
    built by :meth:`setup`.

    Attributes:
        mapper (:class:`.DofMapper`): the DOF numbering
        fixed (ndarray): values of the eliminated (Dirichlet) DOFs
        offset (int): offset of the free DOFs of this space in a block system
    """
    eval_priority = 1

    def __init__(self, bases, dim=1, id=0, name=None):
        from .topology import MultiBasis
        if not hasattr(bases, 'bases'):
            if hasattr(bases, 'eval_derivs'):
                bases = [bases]
            bases = MultiBasis(bases)
        self.multibasis = bases
        self.bases = bases.bases
        self.sdim = self.bases[0].sdim
        self.dim = dim
        self.id = id
        self.name = name if name is not None else 'u%d' % id
        self.shape = (dim, 1)
        self.row_var = self
        self.offset = 0
        self.setup()

    def __str__(self):
        return self.name

    def setup(self, bcs=None, interfaces=True):
        """(Re)build the DOF numbering for the given boundary conditions.

        Dirichlet values are computed from the boundary data in `bcs` (see
        :func:`.compute_dirichlet_values`).

        Args:
            bcs (:class:`.BoundaryConditions`): boundary conditions; sides
                with Dirichlet conditions are eliminated
            interfaces (bool): whether to match DOFs across the interfaces
                of the multi-basis topology
        """
        from .dofmapper import build
        self.bcs = bcs
        self.mapper = build(self.multibasis, bcs, ncomp=self.dim, interfaces=interfaces)
        if bcs is not None and self.mapper.boundary_size > 0:
            from .assemble import compute_dirichlet_values
            self.fixed = compute_dirichlet_values(self, bcs)
        else:
            self.fixed = np.zeros(self.mapper.boundary_size)

    def set_mapper(self, mapper, fixed=None):
        """Use an externally built and finalized :class:`.DofMapper`."""
        mapper.finalize()
        self.mapper = mapper
        self.fixed = np.zeros(mapper.boundary_size) if fixed is None else np.asarray(fixed, dtype=float)
        assert self.fixed.shape == (mapper.boundary_size,), 'wrong number of fixed values'

    def num_dofs(self):
        """Number of free DOFs of this space."""
        return self.mapper.free_size

    def element_dofs(self, patch, actives):
        """Global indices of the active functions of all components, in the
        order of the evaluated blocks; indices from `mapper.size` on are
        constrained."""
        return np.concatenate([self.mapper.local_to_global(actives, patch, d)
                               for d in range(self.dim)])

    def parse(self, reg):
        reg.add(self, Need.VALUE | Need.ACTIVE)

    def compute_data(self, ctx, flags):
        return eval_basis_data(self, self.bases[ctx.patch], ctx.points, flags)

    def eval_node(self, k, ctx):
        phi = ctx.data(self).values[k]
        return _component_blocks(phi[:, None], self.dim)


class CoeffFunction(Expr):
    """A coefficient function.

    Args:
        f: a callable taking coordinates (xyz order), a function object with
            a `pointwise_derivs` method (e.g. :class:`.BSplineFunc`), or a
            sequence of one of these per patch
        G (:class:`GeometryMap`): if given, `f` is evaluated at the physical
            points `G(ξ)`; otherwise at the parametric points `ξ`
        dim (int): output dimension; determined automatically if not given
    """
    eval_priority = 2

    def __init__(self, f, G=None, dim=None, name='f'):
        self.funcs = list(f) if isinstance(f, (list, tuple)) else None
        self.f = f
        self.G = G
        self.name = name
        f0 = self._func(0)
        if dim is None:
            if hasattr(f0, 'pointwise_derivs'):
                dim = f0.dim
            else:
                nargs = G.dim if G is not None else len(inspect.signature(f0).parameters)
                with np.errstate(all='ignore'):
                    shape = utils.eval_at_points(f0, np.zeros((1, nargs))).shape[1:]
                dim = int(np.prod(shape))
        self.dim = dim
        self.shape = (dim, 1)
        self.scalar_valued = (dim == 1)

    def __str__(self):
        return self.name

    def _func(self, patch):
        return self.funcs[patch] if self.funcs is not None else self.f

    def has_derivatives(self):
        return hasattr(self._func(0), 'pointwise_derivs')

    def parse(self, reg):
        reg.add(self, Need.VALUE)
        if self.G is not None:
            self.G.parse(reg)

    def compute_data(self, ctx, flags):
        f = self._func(ctx.patch)
        pts = ctx.data(self.G).values if self.G is not None else ctx.points
        nq = pts.shape[0]
        arrays = dict(num_points=nq)
        if hasattr(f, 'pointwise_derivs'):
            order = 2 if flags & Need.DERIV2 else (1 if flags & Need.DERIV else 0)
            vals = f.pointwise_derivs(pts, order)
            arrays['values'] = vals[0].reshape((nq, self.dim))
            if order >= 1:
                arrays['jac'] = vals[1]
            if order >= 2:
                arrays['deriv2'] = vals[2]
        else:
            arrays['values'] = utils.eval_at_points(f, pts).reshape((nq, self.dim))
        return FieldData(self, flags | Need.VALUE, **arrays)

    def eval_node(self, k, ctx):
        return ctx.data(self).values[k][:, None]


class SolutionField(Expr):
    """A discrete function in a :class:`Space`, given by a vector of free DOFs.

    The vector is referenced, not copied, so that updating it in place (e.g.
    in a Newton iteration) changes the field. Eliminated DOFs take the fixed
    values of the space, and constrained DOFs are combined from the DOFs
    they depend on.
    """
    eval_priority = 3

    def __init__(self, space, vector):
        self.space = space
        self.vector = vector
        self.shape = (space.dim, 1)
        self.scalar_valued = (space.dim == 1)

    def __str__(self):
        return 'sol(%s)' % self.space

    def local_coefficients(self, patch, indices):
        """Coefficients `(len(indices), dim)` of the local functions `indices` of `patch`."""
        sp = self.space
        nfree = sp.mapper.free_size
        out = np.empty((len(indices), sp.dim))
        for d in range(sp.dim):
            g, W = sp.mapper.expand(sp.mapper.local_to_global(indices, patch, d))
            free = g < nfree
            vals = np.empty(len(g))
            vals[free] = self.vector[sp.offset + g[free]]
            vals[~free] = sp.fixed[g[~free] - nfree]
            out[:, d] = vals if W is None else W @ vals
        return out

    def coefficients(self, patch):
        """All coefficients `(n_local, dim)` on the given patch."""
        return self.local_coefficients(patch, np.arange(self.space.bases[patch].size))

    def parse(self, reg):
        reg.add(self.space, Need.VALUE | Need.ACTIVE)
        reg.add(self, Need.ACTIVE)

    def compute_data(self, ctx, flags):
        acts = ctx.data(self.space).actives
        return FieldData(self, Need.ACTIVE | Need.VALUE, num_points=ctx.num_points, actives=acts,
                         values=self.local_coefficients(ctx.patch, acts))

    def coefs(self, ctx):
        return ctx.data(self).values

    def eval_node(self, k, ctx):
        phi = ctx.data(self.space).values[k]
        return phi.dot(self.coefs(ctx))[:, None]

################################################################################
# Differential operators
################################################################################

def _arg_sdim(e):
    if isinstance(e, (GeometryMap, Space)):
        return e.sdim
    elif isinstance(e, SolutionField):
        return e.space.sdim
    elif isinstance(e, CoeffFunction) and e.has_derivatives():
        return e.G.dim if e.G is not None else e._func(0).sdim
    return None

def _parse_derivs(e, reg, flags):
    if isinstance(e, SolutionField):
        e.parse(reg)
        reg.add(e.space, flags)
    else:
        e.parse(reg)
        reg.add(e, flags)


class JacExpr(Expr):
    """Parametric Jacobian `(rows x sdim)` of a geometry map, space,
    coefficient function or solution field."""
    def __init__(self, e, name='jac'):
        sdim = _arg_sdim(e)
        if sdim is None:
            raise TypeError('%s() requires a geometry map, space, solution field or '
                            'differentiable coefficient, not %s' % (name, e))
        self.name = name
        self.children = (e,)
        self.shape = (e.rows, sdim)
        self.row_var = e.row_var

    def __str__(self):
        return '%s(%s)' % (self.name, self.x)

    def parse(self, reg):
        _parse_derivs(self.x, reg, Need.DERIV)

    def ginv(self):
        if isinstance(self.x, GeometryMap):
            return JacInvExpr(self.x)
        return GinvExpr(self)

    def eval_node(self, k, ctx):
        e = self.x
        if isinstance(e, Space):
            return _component_blocks(ctx.data(e).derivs[k], e.dim)
        elif isinstance(e, SolutionField):
            return e.coefs(ctx).T.dot(ctx.data(e.space).derivs[k])
        return ctx.data(e).jac[k]


class Deriv2Expr(Expr):
    """Packed second derivatives `(ncomb x rows)`, see :func:`.deriv2_pairs`."""
    def __init__(self, e):
        sdim = _arg_sdim(e)
        if sdim is None:
            raise TypeError('deriv2() requires a geometry map, space, solution field or '
                            'differentiable coefficient, not %s' % (e,))
        self.sdim = sdim
        self.children = (e,)
        self.shape = (len(deriv2_pairs(sdim)), e.rows)
        self.row_var = e.row_var

    def __str__(self):
        return 'deriv2(%s)' % self.x

    def parse(self, reg):
        _parse_derivs(self.x, reg, Need.DERIV2)

    def eval_node(self, k, ctx):
        e = self.x
        if isinstance(e, Space):
            D = _component_blocks(ctx.data(e).deriv2[k], e.dim)    # (cN, c, ncomb)
            return np.swapaxes(D, -1, -2)
        elif isinstance(e, SolutionField):
            return ctx.data(e.space).deriv2[k].T.dot(e.coefs(ctx))
        return ctx.data(e).deriv2[k]


class HessExpr(Expr):
    """Full parametric Hessian `(sdim x sdim)` of a scalar function or space."""
    def __init__(self, e):
        if e.rows != 1:
            raise TypeError('hess() requires a scalar argument, got shape %s' % (e.shape,))
        D = Deriv2Expr(e)
        self.sdim = D.sdim
        self.children = (D,)
        self.shape = (D.sdim, D.sdim)
        self.row_var = e.row_var

    def __str__(self):
        return 'hess(%s)' % self.x.x

    def eval_node(self, k, ctx):
        return unpack_deriv2(self.x.eval(k, ctx)[..., 0], self.sdim)


class JacInvExpr(Expr):
    """Generalized inverse `(sdim x dim)` of the Jacobian of a geometry map."""
    def __init__(self, G):
        self.children = (G,)
        self.shape = (G.sdim, G.dim)

    def __str__(self):
        return 'jac(%s).ginv()' % self.x

    def parse(self, reg):
        self.x.parse(reg)
        reg.add(self.x, Need.GRAD_TRANSFORM)

    def eval_node(self, k, ctx):
        return ctx.data(self.x).jac_inv[k]


class IHessExpr(Expr):
    """Physical Hessian `(dim x dim)` of a scalar space or solution field."""
    def __init__(self, e, G):
        if e.rows != 1:
            raise TypeError('ihess() requires a scalar argument, got shape %s' % (e.shape,))
        if G.sdim != G.dim:
            raise ValueError('ihess() requires a volumetric geometry map (sdim=%d, dim=%d)'
                    % (G.sdim, G.dim))
        self.sdim = G.sdim
        self.children = (Deriv2Expr(e), JacExpr(e), JacInvExpr(G), Deriv2Expr(G))
        self.shape = (G.dim, G.dim)
        self.row_var = e.row_var

    def __str__(self):
        return 'ihess(%s, %s)' % (self.x.x, self.children[2].x)

    def eval_node(self, k, ctx):
        d2, g, Jinv, HG = (c.eval(k, ctx) for c in self.children)
        s = self.sdim
        Hxi = unpack_deriv2(d2[..., 0], s)              # (..., s, s)
        gx = np.matmul(g, Jinv)[..., 0, :]              # physical gradient (..., t)
        HGf = unpack_deriv2(HG.T, s)                    # (t, s, s)
        corr = np.einsum('...m,mab->...ab', gx, HGf)
        return np.einsum('ai,...ab,bj->...ij', Jinv, Hxi - corr, Jinv)


class MeasExpr(Expr):
    """Measure `sqrt(det(JᵀJ))` of a geometry map."""
    scalar_valued = True

    def __init__(self, G):
        self.children = (G,)
        self.shape = (1, 1)

    def __str__(self):
        return 'meas(%s)' % self.x

    def parse(self, reg):
        self.x.parse(reg)
        reg.add(self.x, Need.MEASURE)

    def eval_node(self, k, ctx):
        return ctx.data(self.x).measure[k].reshape((1, 1))


class NormalExpr(Expr):
    """Unnormalized normal vector of a geometry map.

    For a map with `dim == sdim + 1`, this is the normal of the manifold. For
    `dim == sdim`, it is the outer normal on the boundary side currently
    integrated over. In both cases its length is the surface measure.
    """
    def __init__(self, G):
        if G.dim not in (G.sdim, G.sdim + 1):
            raise ValueError('nv() requires dim == sdim or dim == sdim + 1, got sdim=%d, dim=%d'
                    % (G.sdim, G.dim))
        self.children = (G,)
        self.shape = (G.dim, 1)

    def __str__(self):
        return 'nv(%s)' % self.x

    def parse(self, reg):
        self.x.parse(reg)
        reg.add(self.x, Need.OUTER_NORMAL)

    def eval_node(self, k, ctx):
        return ctx.data(self.x).outer_normal[k][:, None]

################################################################################
# Algebraic combinators
################################################################################

class NegExpr(Expr):
    def __init__(self, e):
        self.children = (e,)
        self.shape = e.shape
        self.row_var, self.col_var = e.row_var, e.col_var
        self.scalar_valued = e.scalar_valued

    def __str__(self):
        return '-%s' % self.x

    def eval_node(self, k, ctx):
        return -self.x.eval(k, ctx)


class SumExpr(Expr):
    def __init__(self, x, y, sign=1):
        if x.row_var is not y.row_var or x.col_var is not y.col_var:
            raise TypeError('space role conflict: cannot add %s [%s] and %s [%s]'
                    % (x, x.role.name, y, y.role.name))
        if x.shape != y.shape:
            raise ValueError('incompatible shapes: %s, %s' % (x.shape, y.shape))
        self.children = (x, y)
        self.sign = sign
        self.shape = x.shape
        self.row_var, self.col_var = x.row_var, x.col_var
        self.scalar_valued = x.scalar_valued and y.scalar_valued

    def __str__(self):
        return '(%s %s %s)' % (self.x, '+' if self.sign > 0 else '-', self.y)

    def eval_node(self, k, ctx):
        a, b = self.x.eval(k, ctx), self.y.eval(k, ctx)
        return a + b if self.sign > 0 else a - b


class ProductExpr(Expr):
    """Product of two expressions.

    If one factor is a scalar (see :meth:`Expr.is_scalar`), it scales the other
    one coefficient-wise; otherwise this is the matrix product of the blocks.
    Space-valued factors combine into block-structured results: a test space
    expression times a trial space expression yields one block per pair of
    active functions.
    """
    def __init__(self, x, y):
        _check_roles(x, y, 'product')
        if x.is_scalar():
            self.shape = y.shape
            self.mode = 'scale'
        elif y.is_scalar():
            self.shape = x.shape
            self.mode = 'scale'
        elif x.cols != y.rows:
            raise ValueError('incompatible shapes: %s, %s' % (x.shape, y.shape))
        else:
            self.shape = (x.rows, y.cols)
            self.mode = 'matmul'
        self.children = (x, y)
        self.row_var = x.row_var if x.row_var is not None else y.row_var
        self.col_var = x.col_var if x.col_var is not None else y.col_var
        self.scalar_valued = x.scalar_valued and y.scalar_valued

    def __str__(self):
        return '%s*%s' % (self.x, self.y)

    def eval_node(self, k, ctx):
        a = _expand(self.x.eval(k, ctx), self.x.role)
        b = _expand(self.y.eval(k, ctx), self.y.role)
        if self.mode == 'scale':
            r = a * b
        else:
            r = np.matmul(a, b)
        return _collapse(r, self.role)


class DivideExpr(Expr):
    def __init__(self, x, y):
        if not (y.is_scalar() and y.role == Role.NONE):
            raise TypeError('can only divide by scalar expressions which are not space-valued')
        self.children = (x, y)
        self.shape = x.shape
        self.row_var, self.col_var = x.row_var, x.col_var
        self.scalar_valued = x.scalar_valued

    def __str__(self):
        return '%s/%s' % (self.x, self.y)

    def eval_node(self, k, ctx):
        with np.errstate(divide='ignore', invalid='ignore'):
            return self.x.eval(k, ctx) / self.y.eval(k, ctx)[0, 0]


class TransposeExpr(Expr):
    def __init__(self, e):
        self.children = (e,)
        self.shape = (e.cols, e.rows)
        self.row_var, self.col_var = e.col_var, e.row_var
        self.scalar_valued = e.scalar_valued

    def __str__(self):
        return '%s.tr()' % self.x

    def tr(self):
        return self.x

    def eval_node(self, k, ctx):
        v = self.x.eval(k, ctx)
        if self.x.role == Role.BOTH:
            v = np.swapaxes(v, 0, 1)
        return np.swapaxes(v, -1, -2)


class CwiseTrExpr(Expr):
    def __init__(self, e):
        self.children = (e,)
        self.shape = (e.cols, e.rows)
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.cwisetr()' % self.x

    def eval_node(self, k, ctx):
        return np.swapaxes(self.x.eval(k, ctx), -1, -2)


class NocbExpr(Expr):
    def __init__(self, e):
        self.children = (e,)
        self.shape = (1, e.rows * e.cols)
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.nocb()' % self.x

    def eval_node(self, k, ctx):
        v = self.x.eval(k, ctx)
        return v.reshape(v.shape[:-2] + self.shape)


class ValExpr(Expr):
    scalar_valued = True

    def __init__(self, e):
        if e.shape != (1, 1):
            raise ValueError('val() requires a 1x1 expression, got shape %s' % (e.shape,))
        self.children = (e,)
        self.shape = (1, 1)
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.val()' % self.x

    def eval_node(self, k, ctx):
        return self.x.eval(k, ctx)


class NormExpr(Expr):
    """Frobenius norm (or its square) of each block."""
    scalar_valued = True

    def __init__(self, e, squared=False):
        self.children = (e,)
        self.squared = squared
        self.shape = (1, 1)
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.%s()' % (self.x, 'sqnorm' if self.squared else 'norm')

    def eval_node(self, k, ctx):
        v = self.x.eval(k, ctx)
        sq = np.sum(v * v, axis=(-2, -1), keepdims=True)
        return sq if self.squared else np.sqrt(sq)


class NormalizedExpr(Expr):
    def __init__(self, e):
        self.children = (e,)
        self.shape = e.shape
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.normalized()' % self.x

    def eval_node(self, k, ctx):
        v = self.x.eval(k, ctx)
        with np.errstate(divide='ignore', invalid='ignore'):
            return v / np.sqrt(np.sum(v * v, axis=(-2, -1), keepdims=True))


class TraceExpr(Expr):
    scalar_valued = True

    def __init__(self, e):
        if e.rows != e.cols:
            raise ValueError('trace() requires square blocks, got shape %s' % (e.shape,))
        self.children = (e,)
        self.shape = (1, 1)
        self.row_var, self.col_var = e.row_var, e.col_var

    def __str__(self):
        return '%s.trace()' % self.x

    def eval_node(self, k, ctx):
        v = self.x.eval(k, ctx)
        return np.trace(v, axis1=-2, axis2=-1)[..., None, None]


class CrossExpr(Expr):
    def __init__(self, x, y):
        for e in (x, y):
            if e.shape not in ((3, 1), (1, 3)):
                raise ValueError('cross() requires 3-vectors, got shape %s' % (e.shape,))
        _check_roles(x, y, 'cross product')
        self.children = (x, y)
        self.shape = x.shape
        self.row_var = x.row_var if x.row_var is not None else y.row_var
        self.col_var = x.col_var if x.col_var is not None else y.col_var

    def __str__(self):
        return '%s.cross(%s)' % (self.x, self.y)

    def eval_node(self, k, ctx):
        a = _expand(self.x.eval(k, ctx), self.x.role)
        b = _expand(self.y.eval(k, ctx), self.y.role)
        c = np.cross(a.reshape(a.shape[:2] + (3,)), b.reshape(b.shape[:2] + (3,)))
        return _collapse(c.reshape(c.shape[:2] + self.shape), self.role)


class _MatrixFuncExpr(Expr):
    """Base class for functions of plain (not space-valued) matrices."""
    funcname = None

    def __init__(self, e):
        if e.role != Role.NONE:
            raise TypeError('%s() is not defined for space-valued expressions' % self.funcname)
        self.children = (e,)
        self.shape = self.result_shape(e.shape)

    def result_shape(self, shape):
        return shape

    def __str__(self):
        return '%s.%s()' % (self.x, self.funcname)


class GinvExpr(_MatrixFuncExpr):
    funcname = 'ginv'
    def result_shape(self, shape):
        return (shape[1], shape[0])
    def eval_node(self, k, ctx):
        return pinv(self.x.eval(k, ctx))


class InvExpr(_MatrixFuncExpr):
    funcname = 'inv'
    def result_shape(self, shape):
        if shape[0] != shape[1]:
            raise ValueError('inv() requires a square matrix, got shape %s' % (shape,))
        return shape
    def eval_node(self, k, ctx):
        return _inv(self.x.eval(k, ctx))


class DetExpr(_MatrixFuncExpr):
    funcname = 'det'
    scalar_valued = True
    def result_shape(self, shape):
        if shape[0] != shape[1]:
            raise ValueError('det() requires a square matrix, got shape %s' % (shape,))
        return (1, 1)
    def eval_node(self, k, ctx):
        return np.reshape(_det(self.x.eval(k, ctx)), (1, 1))


class BuiltinFuncExpr(_MatrixFuncExpr):
    """Coefficient-wise application of a numpy function."""
    def __init__(self, funcname, e):
        self.funcname = funcname
        _MatrixFuncExpr.__init__(self, e)
        self.scalar_valued = e.scalar_valued

    def __str__(self):
        return '%s(%s)' % (self.funcname, self.x)

    def eval_node(self, k, ctx):
        with np.errstate(divide='ignore', invalid='ignore'):
            return getattr(np, self.funcname)(self.x.eval(k, ctx))

################################################################################
# Differential geometry of space curves
################################################################################

def _check_curve(G):
    if G.sdim != 1:
        raise ValueError('Domain dimension should be 1, but is %d' % G.sdim)
    if G.dim != 3:
        raise ValueError('Target dimension should be 3, but is %d' % G.dim)

def _curve_frame(G, k, ctx):
    """Frenet-type quantities of the curve `G` at node `k`.

    With `c = r' x r''`, `b = c/|c|`, `m = b x r'` and `n = m/|m|`, the
    projections `B = (I - bbᵀ)/|c|` and `A = (I - nnᵀ)/|m|` linearize
    `b` and `n`: `δb = B δc` and `δn = A δm`.
    """
    memo = ctx.scratch.at(k)
    key = ('curve_frame', id(G))
    frame = memo.get(key)
    if frame is None:
        data = ctx.data(G)
        r1 = data.jac[k][:, 0]
        r2 = data.deriv2[k][0, :]
        with np.errstate(divide='ignore', invalid='ignore'):
            c = np.cross(r1, r2)
            cn = np.linalg.norm(c)
            b = c / cn
            m = np.cross(b, r1)
            mn = np.linalg.norm(m)
            n = m / mn
            B = (np.eye(3) - np.outer(b, b)) / cn
            A = (np.eye(3) - np.outer(n, n)) / mn
        frame = memo[key] = dict(r1=r1, r2=r2, c=c, cn=cn, b=b, m=m, mn=mn, n=n, B=B, A=A)
    return frame

def _dof_variations(u, k, ctx):
    """First and second parametric derivatives `(3N, 3)` of the functions of
    the vector space `u`, i.e., the variations `δr'` and `δr''`."""
    data = ctx.data(u)
    D1 = _component_blocks(data.derivs[k], 3)[:, :, 0]
    D2 = _component_blocks(data.deriv2[k], 3)[:, :, 0]
    return D1, D2

def _second_variation(Du, Dv, Duv, t, nrm, P):
    """Second variation `δvδu t` of a unit vector `t = s/|s|` with projection
    `P = (I - ttᵀ)/|s|`, given `δu s (nR,3)`, `δv s (nC,3)` and `δvδu s (nR,nC,3)`.

    Uses `δvP = -(δvt tᵀ + t δvtᵀ)/|s| - P (t·δv s)/|s|`.
    """
    Pv = Dv.dot(P)                  # δv t
    tu = Du.dot(t)
    tv = Dv.dot(t)
    with np.errstate(divide='ignore', invalid='ignore'):
        dP = (-(Pv[None, :, :] * tu[:, None, None]
                + t[None, None, :] * Du.dot(Pv.T)[:, :, None]) / nrm
              - Du.dot(P)[:, None, :] * tv[None, :, None] / nrm)
    return dP + Duv.dot(P)


class _CurveExpr(Expr):
    def __init__(self, G, *spaces):
        _check_curve(G)
        for u in spaces:
            if not isinstance(u, Space) or u.dim != 3 or u.sdim != 1:
                raise TypeError('expected a 3-component space over a curve, got %s' % (u,))
        self.G = G
        self.spaces = spaces
        self.children = (G,) + spaces

    def parse(self, reg):
        self.G.parse(reg)
        reg.add(self.G, Need.DERIV | Need.DERIV2)
        for u in self.spaces:
            u.parse(reg)
            reg.add(u, Need.DERIV | Need.DERIV2)

    def __str__(self):
        return '%s(%s)' % (self.name, ', '.join(str(c) for c in self.spaces + (self.G,)))


class BinormalExpr(_CurveExpr):
    name = 'binormal'
    def __init__(self, G):
        _CurveExpr.__init__(self, G)
        self.shape = (3, 1)

    def eval_node(self, k, ctx):
        return _curve_frame(self.G, k, ctx)['b'][:, None]


class CurveNormalExpr(_CurveExpr):
    name = 'curve_normal'
    def __init__(self, G):
        _CurveExpr.__init__(self, G)
        self.shape = (3, 1)

    def eval_node(self, k, ctx):
        return _curve_frame(self.G, k, ctx)['n'][:, None]


def _variations_b(f, U1, U2):
    dc = np.cross(U1, f['r2']) + np.cross(f['r1'], U2)
    return dc, dc.dot(f['B'])

def _variations_n(f, U1, dbu):
    dm = np.cross(dbu, f['r1']) + np.cross(f['b'], U1)
    return dm, dm.dot(f['A'])


class BVar1Expr(_CurveExpr):
    """First variation `δb (1x3)` of the binormal per DOF of `u`."""
    name = 'bvar1'
    def __init__(self, u, G):
        _CurveExpr.__init__(self, G, u)
        self.shape = (1, 3)
        self.row_var = u

    def eval_node(self, k, ctx):
        f = _curve_frame(self.G, k, ctx)
        U1, U2 = _dof_variations(self.spaces[0], k, ctx)
        return _variations_b(f, U1, U2)[1][:, None, :]


class NVar1Expr(_CurveExpr):
    """First variation `δn (1x3)` of the curve normal per DOF of `u`."""
    name = 'nvar1'
    def __init__(self, u, G):
        _CurveExpr.__init__(self, G, u)
        self.shape = (1, 3)
        self.row_var = u

    def eval_node(self, k, ctx):
        f = _curve_frame(self.G, k, ctx)
        U1, U2 = _dof_variations(self.spaces[0], k, ctx)
        dbu = _variations_b(f, U1, U2)[1]
        return _variations_n(f, U1, dbu)[1][:, None, :]


class _CurveVar2Expr(_CurveExpr):
    def __init__(self, u, v, G):
        _CurveExpr.__init__(self, G, u, v)
        self.shape = (1, 3)
        self.row_var = u
        self.col_var = v

    def _b_variations(self, k, ctx):
        f = _curve_frame(self.G, k, ctx)
        U1, U2 = _dof_variations(self.spaces[0], k, ctx)
        V1, V2 = _dof_variations(self.spaces[1], k, ctx)
        dcu, dbu = _variations_b(f, U1, U2)
        dcv, dbv = _variations_b(f, V1, V2)
        dcuv = (np.cross(U1[:, None, :], V2[None, :, :])
                + np.cross(V1[None, :, :], U2[:, None, :]))
        dbuv = _second_variation(dcu, dcv, dcuv, f['b'], f['cn'], f['B'])
        return f, (U1, V1), (dbu, dbv, dbuv)


class BVar2Expr(_CurveVar2Expr):
    """Second variation `δvδu b (1x3)` of the binormal per pair of DOFs."""
    name = 'bvar2'
    def eval_node(self, k, ctx):
        dbuv = self._b_variations(k, ctx)[2][2]
        return dbuv[:, :, None, :]


class NVar2Expr(_CurveVar2Expr):
    """Second variation `δvδu n (1x3)` of the curve normal per pair of DOFs."""
    name = 'nvar2'
    def eval_node(self, k, ctx):
        f, (U1, V1), (dbu, dbv, dbuv) = self._b_variations(k, ctx)
        r1, b = f['r1'], f['b']
        dmu = _variations_n(f, U1, dbu)[0]
        dmv = _variations_n(f, V1, dbv)[0]
        dmuv = (np.cross(dbuv, r1)
                + np.cross(dbu[:, None, :], V1[None, :, :])
                + np.cross(dbv[None, :, :], U1[:, None, :]))
        dnuv = _second_variation(dmu, dmv, dmuv, f['n'], f['mn'], f['A'])
        return dnuv[:, :, None, :]

################################################################################
# Functional interface
################################################################################

def jac(e):
    """Parametric Jacobian of `e`."""
    return JacExpr(e)

def grad(e):
    """Parametric gradient of `e` (one row per component)."""
    return JacExpr(e, name='grad')

def igrad(e, G):
    """Gradient of `e` with respect to the physical coordinates of `G`,
    `grad(e) * jac(G).ginv()`."""
    if isinstance(e, CoeffFunction) and e.G is not None:
        return JacExpr(e, name='igrad')     # already a function of physical coordinates
    return grad(e) * jac(G).ginv()

def deriv2(e):
    return Deriv2Expr(e)

def hess(e):
    return HessExpr(e)

def ihess(e, G):
    return IHessExpr(e, G)

def div(e):
    """Parametric divergence of a vector space or field."""
    return TraceExpr(grad(e))

def idiv(e, G):
    """Physical divergence of a vector space or field."""
    return TraceExpr(igrad(e, G))

def meas(G):
    return MeasExpr(G)

def nv(G):
    return NormalExpr(G)

def sn(G):
    """Unit normal of `G`."""
    return NormalizedExpr(NormalExpr(G))

def binormal(G):
    return BinormalExpr(G)

def curve_normal(G):
    return CurveNormalExpr(G)

def bvar1(u, G):
    return BVar1Expr(u, G)

def nvar1(u, G):
    return NVar1Expr(u, G)

def bvar2(u, v, G):
    return BVar2Expr(u, v, G)

def nvar2(u, v, G):
    return NVar2Expr(u, v, G)

def sqrt(x):
    return BuiltinFuncExpr('sqrt', as_expr(x))

def exp(x):
    return BuiltinFuncExpr('exp', as_expr(x))

def log(x):
    return BuiltinFuncExpr('log', as_expr(x))

def identity(n):
    """The `n x n` identity matrix."""
    return ConstExpr(np.eye(n))

def iterexprs(expr):
    """Generate all nodes of the expression tree (depth first)."""
    yield expr
    for c in expr.children:
        yield from iterexprs(c)
