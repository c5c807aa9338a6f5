# -*- coding: utf-8 -*-
"""Assembling sparse linear systems for multi-patch IgA discretizations.

This module drives the element loop. For every element of every patch, a
quadrature rule is mapped onto the element, the evaluation cache is filled
and each form is integrated into a local matrix or vector, which is then
scattered into the global system through the DOF numbering of the spaces.


Assembling expressions
----------------------

Bilinear and linear forms are written as expressions (see
:mod:`.expressions`) and assembled by an :class:`ExprAssembler`::

    A = ExprAssembler(symmetric=True)
    G = A.get_map(mp)
    u = A.get_space(MultiBasis.from_multipatch(mp))
    u.setup(bcs)
    f = A.get_coeff(lambda x, y: 1.0, G)

    A.init_system()
    A.assemble(igrad(u, G) * igrad(u, G).tr() * meas(G), u * f * meas(G))
    x = make_solver(A.full_matrix()).dot(A.rhs())

Bilinear forms depend on a test space (rows) and a trial space (columns),
linear forms only on a test space. All forms must evaluate to a 1x1 block
per function pair; use e.g. ``.trace()`` to contract vector-valued forms.

Integrals and pointwise values of expressions which do not depend on a space
are computed by an :class:`ExprEvaluator`.


Element visitors
----------------

The per-element algorithm is a :class:`ElementVisitor` with the steps
`initialize` (choose the quadrature rule), `evaluate` (fill the evaluation
data for an element), `assemble` (integrate the local contributions) and
`local_to_global` (scatter through the DOF mapper). The classic
:class:`Assembler` pushes visitor classes such as :class:`GradGradVisitor`
over a multi-patch domain.


Assembly sessions
-----------------

All assemblers accumulate into a :class:`SystemAccumulator`. Workers never
write into shared state: each chunk of elements fills its own triplet
buffer, and the buffers are merged in a fixed order when the session is
finalized. The result is therefore independent of the number of threads.


Boundary conditions
-------------------

Dirichlet values are computed by :func:`compute_dirichlet_values` when a
space is set up with boundary conditions. Eliminated DOFs do not appear in
the assembled system; their contributions are moved to the right-hand side
during the scatter.
"""
import concurrent.futures
import functools
import logging
import warnings

import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from . import bspline
from . import utils
from . import get_max_threads
from .bspline import TensorBasis
from .evaluation import EvalContext, FlagRegistry, measure, pinv
from .expressions import Role, GeometryMap, Space, CoeffFunction, SolutionField, as_expr
from .quadrature import QuadRule, get_quadrature
from .topology import MultiBasis

logger = logging.getLogger(__name__)


################################################################################
# Assembly sessions
################################################################################

class _CooBuffer:
    """Triplets and right-hand side contributions collected by one worker."""
    def __init__(self):
        self.rows, self.cols, self.vals = [], [], []
        self.rhs_idx, self.rhs_vals = [], []

    def add_entries(self, I, J, V):
        self.rows.append(I)
        self.cols.append(J)
        self.vals.append(V)

    def add_rhs(self, I, V):
        self.rhs_idx.append(I)
        self.rhs_vals.append(V)

    @staticmethod
    def _cat(arrays, dtype):
        return np.concatenate(arrays) if arrays else np.zeros(0, dtype=dtype)

    def entries(self):
        return (self._cat(self.rows, int), self._cat(self.cols, int),
                self._cat(self.vals, float))

    def rhs_entries(self):
        return self._cat(self.rhs_idx, int), self._cat(self.rhs_vals, float)


def _expand(mapper, dofs, local, axis):
    # move contributions of constrained DOFs to the DOFs they depend on
    targets, W = mapper.expand(dofs)
    if W is None:
        return dofs, local
    return targets, np.moveaxis(np.tensordot(W, local, axes=(0, axis)), 0, axis)


class SystemAccumulator:
    """An assembly session for a square sparse system and its right-hand side.

    The lifecycle is :meth:`init`, then any number of calls to
    :meth:`accumulate_matrix` and :meth:`accumulate_rhs` on buffers obtained
    from :meth:`new_buffer`, then :meth:`finalize`, which merges the buffers
    in the order they were created and adds them to the stored system.
    Repeated accumulate/finalize cycles add up until :meth:`init` is called
    again.

    Args:
        symmetric (bool): if True, only entries `(i, j)` with `j <= i` (the
            lower triangle) are stored; see :meth:`full_matrix`
    """
    def __init__(self, symmetric=False):
        self.symmetric = bool(symmetric)
        self.shape = None
        self._matrix = None
        self._rhs = None
        self._buffers = []

    def init(self, size):
        """Reset the system to zero with `size` rows and columns."""
        self.shape = (size, size)
        self._matrix = scipy.sparse.csr_matrix(self.shape)
        self._rhs = np.zeros(size)
        self._buffers = []

    def new_buffer(self):
        if self.shape is None:
            raise RuntimeError('assembly session has not been initialized')
        buf = _CooBuffer()
        self._buffers.append(buf)
        return buf

    def accumulate_matrix(self, buf, row_space, row_dofs, col_space, col_dofs, local):
        """Scatter a local matrix of shape `(len(row_dofs), len(col_dofs))`.

        `row_dofs` and `col_dofs` are indices of the DOF mappers of the
        spaces. Rows of eliminated DOFs are dropped; columns of eliminated
        DOFs are multiplied by their fixed values and subtracted from the
        right-hand side. Contributions of constrained DOFs are first
        distributed to the DOFs they depend on (see :meth:`.DofMapper.expand`).
        """
        row_dofs, local = _expand(row_space.mapper, row_dofs, local, 0)
        col_dofs, local = _expand(col_space.mapper, col_dofs, local, 1)
        rfree = row_dofs < row_space.mapper.free_size
        cfree = col_dofs < col_space.mapper.free_size
        I = row_space.offset + row_dofs[rfree]
        local = local[rfree]
        if not cfree.all():
            fixed = col_space.fixed[col_dofs[~cfree] - col_space.mapper.free_size]
            buf.add_rhs(I, -local[:, ~cfree].dot(fixed))
        J = col_space.offset + col_dofs[cfree]
        I, J = np.broadcast_arrays(I[:, None], J[None, :])
        V = local[:, cfree]
        if self.symmetric:
            keep = (J <= I)
            I, J, V = I[keep], J[keep], V[keep]
        buf.add_entries(I.ravel(), J.ravel(), V.ravel())

    def accumulate_rhs(self, buf, row_space, row_dofs, local):
        """Scatter a local vector of length `len(row_dofs)`."""
        row_dofs, local = _expand(row_space.mapper, row_dofs, local, 0)
        rfree = row_dofs < row_space.mapper.free_size
        buf.add_rhs(row_space.offset + row_dofs[rfree], local[rfree])

    def finalize(self):
        """Merge all pending buffers into the system."""
        bufs, self._buffers = self._buffers, []
        if not bufs:
            return
        I, J, V = (np.concatenate(x) for x in zip(*(b.entries() for b in bufs)))
        A = scipy.sparse.coo_matrix((V, (I, J)), shape=self.shape).tocsr()
        self._matrix = (self._matrix + A).tocsr()
        ri, rv = (np.concatenate(x) for x in zip(*(b.rhs_entries() for b in bufs)))
        np.add.at(self._rhs, ri, rv)
        logger.debug('merged %d buffers: %d triplets, %d nonzeros in %dx%d system',
                     len(bufs), len(V), self._matrix.nnz, self.shape[0], self.shape[1])

    def matrix(self):
        """The stored matrix (lower triangle only if `symmetric`)."""
        return self._matrix

    def full_matrix(self):
        """The full matrix; for symmetric storage, the strict lower triangle is mirrored."""
        if not self.symmetric:
            return self._matrix
        return (self._matrix + scipy.sparse.tril(self._matrix, k=-1).T).tocsr()

    def rhs(self):
        return self._rhs


################################################################################
# Element visitors
################################################################################

class ElementVisitor:
    """The per-element assembly algorithm.

    A visitor instance holds the data of the current element and is owned
    by a single worker.
    """
    def initialize(self, patch):
        """Return the :class:`.QuadRule` used on the elements of `patch`."""
        raise NotImplementedError

    def evaluate(self, patch, element, rule, side=None):
        """Evaluate the basis and geometry data on `element`."""
        raise NotImplementedError

    def assemble(self):
        """Integrate the local matrices and vectors."""
        raise NotImplementedError

    def local_to_global(self, accumulator, buf):
        """Scatter the local contributions into `buf`."""
        raise NotImplementedError


class GradGradVisitor(ElementVisitor):
    """Stiffness matrix `∫ ∇u·∇v dx` and optionally load vector `∫ f v dx`
    of a scalar space, using `p + 1` Gauss nodes per direction.

    Args:
        geos: the geometry map of each patch
        space (:class:`.Space`): a scalar space
        f: a function of the physical coordinates (optional)
    """
    def __init__(self, geos, space, f=None):
        assert space.dim == 1, 'GradGradVisitor requires a scalar space'
        self.geos = geos
        self.space = space
        self.f = f

    def initialize(self, patch):
        basis = self.space.bases[patch]
        return QuadRule([basis.degree(j) + 1 for j in range(basis.sdim)])

    def evaluate(self, patch, element, rule, side=None):
        self.patch = patch
        pts, weights = rule.map_to(element.lower, element.upper)
        self.actives, vals = self.space.bases[patch].eval_derivs(pts, 1)
        self.values = vals[0]
        X, J = self.geos[patch].pointwise_derivs(pts, 1)
        self.grads = np.matmul(vals[1], pinv(J))     # physical gradients (nq, N, dim)
        self.wmeas = weights * measure(J)
        if self.f is not None:
            self.fvals = utils.eval_at_points(self.f, X).reshape(len(weights))

    def assemble(self):
        self.local_mat = np.einsum('q,qid,qjd->ij', self.wmeas, self.grads, self.grads)
        if self.f is not None:
            self.local_rhs = np.einsum('q,q,qi->i', self.wmeas, self.fvals, self.values)

    def local_to_global(self, accumulator, buf):
        sp = self.space
        dofs = sp.element_dofs(self.patch, self.actives)
        accumulator.accumulate_matrix(buf, sp, dofs, sp, dofs, self.local_mat)
        if self.f is not None:
            accumulator.accumulate_rhs(buf, sp, dofs, self.local_rhs)


class ExprVisitor(ElementVisitor):
    """Integrates a list of forms over one element at a time.

    Args:
        forms: expressions with block shape 1x1 and a test space
        registry (:class:`.FlagRegistry`): the parsed flags of all forms
        rules: a sequence of :class:`.QuadRule`, one per patch
    """
    def __init__(self, forms, registry, rules):
        self.forms = forms
        self.rules = rules
        self.ctx = EvalContext(registry)

    def initialize(self, patch):
        return self.rules[patch]

    def evaluate(self, patch, element, rule, side=None):
        pts, self.weights = rule.map_to(element.lower, element.upper)
        self.ctx.evaluate_at(patch, pts, side)

    def assemble(self):
        ctx = self.ctx
        local = len(self.forms) * [0.0]
        # fixed node order; all forms at a node share the scratch memo
        for k, w in enumerate(self.weights):
            for i, form in enumerate(self.forms):
                local[i] = local[i] + w * form.eval(k, ctx)
        self.local = [np.asarray(L)[..., 0, 0] for L in local]

    def local_to_global(self, accumulator, buf):
        ctx = self.ctx
        for form, L in zip(self.forms, self.local):
            rsp = form.row_var
            rdofs = rsp.element_dofs(ctx.patch, ctx.data(rsp).actives)
            if form.col_var is None:
                accumulator.accumulate_rhs(buf, rsp, rdofs, L)
            else:
                csp = form.col_var
                cdofs = csp.element_dofs(ctx.patch, ctx.data(csp).actives)
                accumulator.accumulate_matrix(buf, rsp, rdofs, csp, cdofs, L)


def _split(seq, n):
    """Split a list into at most `n` contiguous chunks of nearly equal length."""
    n = max(1, min(n, len(seq)))
    k, m = divmod(len(seq), n)
    return [seq[i*k + min(i, m) : (i+1)*k + min(i+1, m)] for i in range(n)]

def visit_elements(make_visitor, accumulator, jobs, threads=1, progress=False):
    """Run element visitors over all elements and finalize the session.

    Args:
        make_visitor: a callable returning a new :class:`ElementVisitor`
        accumulator (:class:`SystemAccumulator`): the assembly session
        jobs: a list of triples `(patch, elements, side)`, where `side` is
            `None` or the `(axis, side)` pair of boundary elements
        threads (int): number of worker threads
        progress (bool): whether to show a progress bar

    The elements of each job are split into contiguous chunks with one
    visitor and one buffer each.
    """
    chunks = []
    for (patch, elements, side) in jobs:
        for part in _split(elements, threads):
            if part:
                chunks.append((patch, part, side, accumulator.new_buffer()))
    pbar = utils.progress_bar(progress)(total=sum(len(c[1]) for c in chunks))

    def run(chunk):
        patch, elements, side, buf = chunk
        visitor = make_visitor()
        rule = visitor.initialize(patch)
        for el in elements:
            visitor.evaluate(patch, el, rule, side)
            visitor.assemble()
            visitor.local_to_global(accumulator, buf)
            pbar.update(1)

    try:
        if threads > 1 and len(chunks) > 1:
            with concurrent.futures.ThreadPoolExecutor(max_workers=threads) as executor:
                list(executor.map(run, chunks))
        else:
            for chunk in chunks:
                run(chunk)
    finally:
        pbar.close()
    accumulator.finalize()


################################################################################
# Classic visitor-based assembler
################################################################################

class Assembler:
    """Visitor-based assembler for scalar problems on a multi-patch domain.

    Args:
        multipatch (:class:`.MultiPatch`): the geometry
        multibasis (:class:`.MultiBasis`): the discretization; by default
            the tensor product bases of the B-spline patches
        bcs (:class:`.BoundaryConditions`): Dirichlet sides are eliminated

    Visitors are pushed by class, e.g. ``A.push(GradGradVisitor, f=f)``;
    they are constructed with the geometry patches, the space and the
    given keyword arguments. The matrix is stored as its lower triangle.
    """
    def __init__(self, multipatch, multibasis=None, bcs=None):
        if multibasis is None:
            multibasis = MultiBasis.from_multipatch(multipatch)
        self.geos = multipatch.patches
        self.space = Space(multibasis)
        if bcs is not None:
            if bcs.geometry is None:
                bcs.set_geometry(multipatch)
            self.space.setup(bcs)
        self.system = SystemAccumulator(symmetric=True)
        self.system.init(self.space.num_dofs())

    def push(self, visitor_class, **kwargs):
        """Run a visitor of the given class over all elements."""
        jobs = [(p, list(b.elements()), None) for p, b in enumerate(self.space.bases)]
        visit_elements(lambda: visitor_class(self.geos, self.space, **kwargs), self.system, jobs)

    def num_dofs(self):
        return self.space.num_dofs()

    def matrix(self):
        """The full assembled matrix."""
        return self.system.full_matrix()

    def rhs(self):
        return self.system.rhs()

    def solution(self, vector):
        """Wrap a solution vector as a :class:`.SolutionField`."""
        return SolutionField(self.space, vector)


################################################################################
# Expression assembler
################################################################################

class ExprAssembler:
    """Assembles linear systems from bilinear and linear forms.

    Args:
        rows (int): the number of row (test) space blocks
        cols (int): the number of column (trial) space blocks
        **options: assembly options; see :meth:`set_options`

    The unknowns of all spaces created by :meth:`get_space` are numbered
    consecutively, in the order of creation, to form a block system with
    `max(rows, cols)` blocks.
    """
    _default_options = dict(quA=1.0, quB=1, symmetric=False, threads=1, progress=False)

    def __init__(self, rows=1, cols=1, **options):
        self.num_row_blocks = rows
        self.num_col_blocks = cols
        self._options = dict(self._default_options)
        self.set_options(**options)
        self._elements = None
        self._spaces = []
        self._maps = []
        self._system = None

    def set_options(self, **options):
        """Change assembly options.

        Args:
            quA (float), quB (int): use `quA*p + quB` Gauss nodes per
                direction, where `p` is the degree of the integration basis
            symmetric (bool): store only the lower triangle of the matrix;
                takes effect at the next :meth:`init_system`
            threads (int): number of worker threads; `None` means
                :func:`igaexpr.get_max_threads`
            progress (bool): show a progress bar over the elements
        """
        unknown = set(options) - set(self._default_options)
        if unknown:
            raise ValueError('unknown assembler options: %s' % ', '.join(sorted(unknown)))
        self._options.update(options)

    @property
    def options(self):
        return dict(self._options)

    def set_integration_elements(self, multibasis):
        """Use the elements of `multibasis` (a :class:`.MultiBasis`, a list of
        bases or a single basis) for integration."""
        if not hasattr(multibasis, 'bases'):
            if hasattr(multibasis, 'elements'):
                multibasis = [multibasis]
            multibasis = MultiBasis(multibasis)
        self._elements = multibasis

    def integration_elements(self):
        if self._elements is None:
            # fall back to the knot meshes of the B-spline geometry patches
            if self._maps and all(hasattr(g, 'kvs') for g in self._maps[0].patches):
                self._elements = MultiBasis([TensorBasis(g.kvs) for g in self._maps[0].patches])
            else:
                raise RuntimeError('no integration elements; call set_integration_elements() or get_space()')
        return self._elements

    def get_map(self, geo, name='G'):
        """Register a geometry map (a :class:`.MultiPatch` or geometry function)."""
        G = GeometryMap(geo, name=name)
        self._maps.append(G)
        return G

    def get_space(self, basis, dim=1, id=None):
        """Create a :class:`.Space` with `dim` components over the given basis.

        The first space also sets the integration elements unless they were
        set explicitly.
        """
        if len(self._spaces) >= max(self.num_row_blocks, self.num_col_blocks):
            raise ValueError('assembler was created for at most %d spaces'
                    % max(self.num_row_blocks, self.num_col_blocks))
        u = Space(basis, dim=dim, id=len(self._spaces) if id is None else id)
        self._spaces.append(u)
        if self._elements is None:
            self._elements = u.multibasis
        return u

    def get_coeff(self, f, G=None, dim=None, name='f'):
        """Create a :class:`.CoeffFunction`; if `G` is given, `f` takes physical coordinates."""
        return CoeffFunction(f, G=G, dim=dim, name=name)

    def get_solution(self, space, vector):
        """Interpret `vector`, a vector of all unknowns of the system, as a
        field in `space`."""
        self._update_offsets()
        return SolutionField(space, vector)

    def _update_offsets(self):
        offset = 0
        for u in self._spaces:
            u.offset = offset
            offset += u.num_dofs()
        return offset

    def num_dofs(self):
        return sum(u.num_dofs() for u in self._spaces)

    def init_system(self):
        """Set up a zero system sized by the current DOF numbering of the spaces."""
        n = self._update_offsets()
        self._system = SystemAccumulator(symmetric=self._options['symmetric'])
        self._system.init(n)
        logger.debug('initialized system with %d unknowns in %d blocks', n, len(self._spaces))

    def _check_forms(self, forms):
        forms = [as_expr(f) for f in forms]
        for f in forms:
            if f.role == Role.NONE:
                raise TypeError('form %s does not depend on a space' % (f,))
            if f.row_var is None:
                raise TypeError('form %s has no test space; linear forms must use the space, not its transpose' % (f,))
            if f.shape != (1, 1):
                raise ValueError('forms must be 1x1 per pair of functions, got shape %s for %s'
                        % (f.shape, f))
            for sp in (f.row_var, f.col_var):
                if sp is not None and not any(sp is u for u in self._spaces):
                    raise ValueError('space %s was not created by this assembler' % (sp,))
        return forms

    def _run(self, forms, jobs):
        if self._system is None:
            raise RuntimeError('init_system() must be called before assembling')
        reg = FlagRegistry()
        for f in forms:
            f.parse(reg)
        quA, quB = self._options['quA'], self._options['quB']
        rules = [get_quadrature(b, quA, quB) for b in self.integration_elements().bases]
        threads = self._options['threads'] or get_max_threads()
        visit_elements(lambda: ExprVisitor(forms, reg, rules), self._system, jobs,
                       threads=threads, progress=self._options['progress'])

    def assemble(self, *forms):
        """Integrate the forms over all elements and add them to the system."""
        forms = self._check_forms(forms)
        mb = self.integration_elements()
        jobs = [(p, list(b.elements()), None) for p, b in enumerate(mb.bases)]
        logger.debug('assembling %d forms over %d elements', len(forms),
                     sum(len(j[1]) for j in jobs))
        self._run(forms, jobs)

    def assemble_boundary(self, sides, *forms):
        """Integrate the forms over boundary sides and add them to the system.

        Args:
            sides: a list of `(patch, bdspec)` pairs, e.g.
                :attr:`.MultiPatch.boundaries`, or a :class:`.BoundaryConditions`
                object whose Neumann sides are used

        Boundary integrals use the surface measure ``nv(G).norm()``.
        """
        if hasattr(sides, 'neumann'):
            sides = [(bc.patch, bc.side) for bc in sides.neumann]
        forms = self._check_forms(forms)
        if not sides:
            warnings.warn('assemble_boundary() called without boundary sides', RuntimeWarning)
            return
        mb = self.integration_elements()
        jobs = []
        for (p, side) in sides:
            bd = bspline.parse_side(side, mb[p].sdim)
            jobs.append((p, list(mb[p].boundary_elements(bd)), bd))
        self._run(forms, jobs)

    def _check_system(self):
        if self._system is None:
            raise RuntimeError('init_system() has not been called')
        return self._system

    def matrix(self):
        """The assembled matrix; only the lower triangle if `symmetric` is set."""
        return self._check_system().matrix()

    def full_matrix(self):
        return self._check_system().full_matrix()

    def rhs(self):
        return self._check_system().rhs()


class ExprEvaluator:
    """Computes integrals and pointwise values of expressions.

    Integration uses the elements and quadrature options of `assembler`.
    """
    def __init__(self, assembler):
        self.assembler = assembler

    @staticmethod
    def _result(v):
        v = np.asarray(v)
        return float(v[0, 0]) if v.shape == (1, 1) else v

    def _element_integrals(self, expr):
        expr = as_expr(expr)
        if expr.role != Role.NONE:
            raise TypeError('cannot integrate the space-valued expression %s' % (expr,))
        reg = FlagRegistry()
        expr.parse(reg)
        ctx = EvalContext(reg)
        opts = self.assembler.options
        for p, basis in enumerate(self.assembler.integration_elements().bases):
            rule = get_quadrature(basis, opts['quA'], opts['quB'])
            for el in basis.elements():
                pts, weights = rule.map_to(el.lower, el.upper)
                ctx.evaluate_at(p, pts)
                yield sum(w * expr.eval(k, ctx) for k, w in enumerate(weights))

    def integral(self, expr):
        """Integral of `expr` over all patches (in the parameter domain; multiply
        by ``meas(G)`` to integrate over the physical domain)."""
        return self._result(sum(self._element_integrals(expr)))

    def integral_elementwise(self, expr):
        """Integrals over each element, in the order of the patches and their elements."""
        return np.array([self._result(v) for v in self._element_integrals(expr)])

    def eval(self, expr, point, patch=0):
        """Evaluate `expr` at a parametric point (xyz order) of `patch`."""
        expr = as_expr(expr)
        reg = FlagRegistry()
        expr.parse(reg)
        ctx = EvalContext(reg)
        ctx.evaluate_at(patch, np.asarray(point, dtype=float).reshape((1, -1)))
        return expr.eval(0, ctx)

    def max_interior(self, expr):
        """Maximum of a scalar expression over all quadrature nodes."""
        expr = as_expr(expr)
        if expr.role != Role.NONE or expr.shape != (1, 1):
            raise TypeError('max_interior() requires a scalar expression, got %r' % (expr,))
        reg = FlagRegistry()
        expr.parse(reg)
        ctx = EvalContext(reg)
        opts = self.assembler.options
        result = -np.inf
        for p, basis in enumerate(self.assembler.integration_elements().bases):
            rule = get_quadrature(basis, opts['quA'], opts['quB'])
            for el in basis.elements():
                pts, _ = rule.map_to(el.lower, el.upper)
                ctx.evaluate_at(p, pts)
                result = max(result, max(expr.eval(k, ctx)[0, 0] for k in range(len(pts))))
        return float(result)


################################################################################
# Boundary conditions
################################################################################

def _eval_bc_func(func, params, geo, ncomp):
    """Evaluate Dirichlet data at parametric points; returns `(n, ncomp)`."""
    n = params.shape[0]
    if np.isscalar(func):
        return np.full((n, ncomp), float(func))
    X = geo.pointwise_derivs(params, 0)[0] if geo is not None else params
    vals = utils.eval_at_points(func, X).reshape((n, -1))
    if vals.shape[1] == 1 and ncomp > 1:
        vals = np.repeat(vals, ncomp, axis=1)
    if vals.shape[1] != ncomp:
        raise ValueError('Dirichlet function has %d components, expected %d' % (vals.shape[1], ncomp))
    return vals

def _interpolate_side(basis, side, func, geo, ncomp):
    """Interpolate Dirichlet data at the Gréville points of a tensor product side."""
    ax, sd = side
    kvs = [kv for d, kv in enumerate(basis.kvs) if d != ax]
    indices = basis.boundary_indices((side,))
    if kvs:
        grev = [kv.greville() for kv in kvs]
        grid = np.meshgrid(*grev, indexing='ij')       # zyx
        pts = np.stack([g.ravel() for g in reversed(grid)], axis=-1)
        C = functools.reduce(lambda A, B: scipy.sparse.kron(A, B, format='csr'),
                             [bspline.collocation(kv, g) for kv, g in zip(kvs, grev)])
    else:
        pts = np.zeros((1, 0))
        C = scipy.sparse.identity(1, format='csr')
    params = np.insert(pts, basis.sdim - 1 - ax, basis.kvs[ax].support()[sd], axis=1)
    vals = _eval_bc_func(func, params, geo, ncomp)
    coeffs = scipy.sparse.linalg.splu(C.tocsc()).solve(vals)
    return indices, coeffs.reshape((len(indices), ncomp))

def _project_side(basis, side, func, geo, ncomp):
    """L2 projection of Dirichlet data onto the functions of a side."""
    indices = basis.boundary_indices((side,))
    lookup = {int(i): k for k, i in enumerate(indices)}
    n = len(indices)
    M = np.zeros((n, n))
    b = np.zeros((n, ncomp))
    rule = QuadRule([basis.degree(j) + 1 for j in range(basis.sdim)])
    for el in basis.boundary_elements(side):
        pts, w = rule.map_to(el.lower, el.upper)
        actives, vals = basis.eval_derivs(pts, 0)
        sel = [k for k, a in enumerate(actives) if int(a) in lookup]
        idx = [lookup[int(actives[k])] for k in sel]
        phi = vals[0][:, sel]
        wphi = w[:, None] * phi
        M[np.ix_(idx, idx)] += phi.T.dot(wphi)
        b[idx] += wphi.T.dot(_eval_bc_func(func, pts, geo, ncomp))
    return indices, np.linalg.solve(M, b)

def compute_dirichlet_values(space, bcs):
    """Compute the values of the eliminated DOFs of `space`.

    Dirichlet data on tensor product sides are interpolated at the Gréville
    points of the side basis; for other bases (hierarchical or composed),
    they are L2-projected onto the side. Functions are evaluated at the
    physical points of `bcs.geometry` if it is set, otherwise at parametric
    points.

    Returns:
        ndarray: the values, indexed by `g - mapper.free_size` for the
        eliminated global indices `g`
    """
    mapper = space.mapper
    fixed = np.zeros(mapper.boundary_size)
    geometry = bcs.geometry
    for bc in bcs.dirichlet_sides(space.sdim):
        basis = space.bases[bc.patch]
        geo = geometry.patches[bc.patch] if geometry is not None else None
        comps = list(range(space.dim)) if bc.comp is None else [bc.comp]
        if isinstance(basis, TensorBasis):
            indices, coeffs = _interpolate_side(basis, bc.side, bc.func, geo, len(comps))
        else:
            indices, coeffs = _project_side(basis, bc.side, bc.func, geo, len(comps))
        for j, c in enumerate(comps):
            g = mapper.local_to_global(indices, bc.patch, c)
            fixed[g - mapper.free_size] = coeffs[:, j]
    logger.debug('computed %d Dirichlet values', len(fixed))
    return fixed
