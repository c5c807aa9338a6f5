"""Numbering of the degrees of freedom of multi-patch discretizations.

A :class:`DofMapper` assigns to every local basis function `i` of every patch
and every component a global index. Functions which are matched across an
interface share one index; functions on Dirichlet sides are *eliminated*.
On non-conforming interfaces with nested side spaces, the functions of the
finer side are *constrained*: they are linear combinations of the functions
of the coarser side.

After :meth:`DofMapper.finalize`, the free DOFs are numbered
`0, ..., free_size-1`, the eliminated ones `free_size, ..., size-1` and the
constrained ones `size, ..., size+constrained_size-1`. Only free and
eliminated DOFs are independent; see :meth:`DofMapper.expand`.
"""
import functools
import logging

import numpy as np
import scipy.sparse

from . import bspline
from .bspline import BasisKind

logger = logging.getLogger(__name__)


class DofMapper:
    """Maps `(patch, local index, component)` to global DOF indices.

    Args:
        sizes (seq): number of basis functions per patch
        ncomp (int): number of components
    """
    def __init__(self, sizes, ncomp=1):
        self.sizes = [int(n) for n in sizes]
        self.ncomp = ncomp
        self.patch_offsets = np.concatenate(([0], np.cumsum(self.sizes))).astype(int)
        self.total_local = int(self.patch_offsets[-1])
        n = ncomp * self.total_local
        self._parent = np.arange(n)
        self._elim = np.zeros(n, dtype=bool)
        self._constraints = {}      # provisional id -> (master ids, weights)
        self._index = None
        self._finalized = False

    def __repr__(self):
        if self._finalized:
            if self.constrained_size:
                return ('<DofMapper free=%d eliminated=%d constrained=%d>'
                        % (self.free_size, self.boundary_size, self.constrained_size))
            return '<DofMapper free=%d eliminated=%d>' % (self.free_size, self.boundary_size)
        return '<DofMapper (not finalized) local=%d>' % (self.ncomp * self.total_local)

    def _prov(self, indices, patch, comp):
        """Provisional ids of local functions."""
        return comp * self.total_local + self.patch_offsets[patch] + np.asarray(indices, dtype=int)

    def _comps(self, comp):
        return range(self.ncomp) if comp is None else [comp]

    def _check_mutable(self):
        if self._finalized:
            raise RuntimeError('DofMapper is finalized; call rebuild() before modifying it')

    def _find(self, x):
        parent = self._parent
        root = x
        while parent[root] != root:
            root = parent[root]
        while parent[x] != root:        # path compression
            parent[x], x = root, parent[x]
        return root

    def _union(self, a, b):
        ra, rb = self._find(a), self._find(b)
        if ra != rb:
            # the smaller provisional id represents the group
            lo, hi = min(ra, rb), max(ra, rb)
            self._parent[hi] = lo

    def mark_boundary(self, patch, indices, comp=None):
        """Mark local functions of `patch` as eliminated (Dirichlet)."""
        self._check_mutable()
        for c in self._comps(comp):
            self._elim[self._prov(indices, patch, c)] = True

    def match_dof(self, patch1, indices1, patch2, indices2, comp=None):
        """Declare that the local functions `indices1` of `patch1` coincide with
        `indices2` of `patch2`."""
        self._check_mutable()
        indices1, indices2 = np.atleast_1d(indices1), np.atleast_1d(indices2)
        if len(indices1) != len(indices2):
            raise ValueError('sizes do not match: %d != %d' % (len(indices1), len(indices2)))
        for c in self._comps(comp):
            for a, b in zip(self._prov(indices1, patch1, c), self._prov(indices2, patch2, c)):
                self._union(int(a), int(b))

    def constrain(self, patch, indices, master_patch, master_indices, P, comp=None):
        """Declare that the local functions `indices` of `patch` are the linear
        combinations ``P @ master`` of the local functions `master_indices`
        of `master_patch`.

        Rows of `P` which select a single master function with weight 1 are
        matched as by :meth:`match_dof` instead.
        """
        self._check_mutable()
        indices, master_indices = np.atleast_1d(indices), np.atleast_1d(master_indices)
        P = scipy.sparse.csr_matrix(P, copy=True)
        if P.shape != (len(indices), len(master_indices)):
            raise ValueError('sizes do not match: constraint matrix of shape %s for %d and %d functions'
                    % (P.shape, len(indices), len(master_indices)))
        P.eliminate_zeros()
        for c in self._comps(comp):
            slaves = self._prov(indices, patch, c)
            masters = self._prov(master_indices, master_patch, c)
            for r, s in enumerate(slaves):
                cols = P.indices[P.indptr[r]:P.indptr[r+1]]
                w = P.data[P.indptr[r]:P.indptr[r+1]]
                if len(cols) == 1 and np.isclose(w[0], 1.0):
                    self._union(int(s), int(masters[cols[0]]))
                else:
                    # the first constraint declared for a function is kept
                    self._constraints.setdefault(int(s), (masters[cols], w.copy()))

    def match_interface(self, intf, basis1, basis2, comp=None):
        """Match the functions on both sides of an :class:`.Interface`.

        The algorithm is selected by the :class:`.BasisKind` of the bases.
        Tensor product sides whose knot vectors are nested are coupled by
        :meth:`constrain` through the prolongation from the coarser side.
        """
        if basis1.kind != basis2.kind:
            raise ValueError('cannot match %s basis on patch %d with %s basis on patch %d'
                    % (basis1.kind.name, intf.patch1, basis2.kind.name, intf.patch2))
        if basis1.kind == BasisKind.TENSOR:
            coupling = nested_interface(intf, basis1, basis2)
            if coupling is not None:
                self.constrain(*coupling, comp=comp)
                return
            I1, I2 = match_tensor(intf, basis1, basis2)
        else:
            I1, I2 = match_hierarchical(intf, basis1, basis2)
        self.match_dof(intf.patch1, I1, intf.patch2, I2, comp)

    def finalize(self):
        """Number the free and eliminated DOFs; idempotent.

        Groups of matched functions are numbered in the order of their
        smallest member; a group is eliminated if any of its members is.
        Otherwise, it is constrained if any of its members is.

        Raises:
            ValueError: if the constraints depend on each other cyclically
        """
        if self._finalized:
            return
        n = len(self._parent)
        roots = np.array([self._find(i) for i in range(n)], dtype=int)
        group_elim = np.zeros(n, dtype=bool)
        np.logical_or.at(group_elim, roots, self._elim)
        rules = {}
        for s in sorted(self._constraints):
            r = roots[s]
            if not group_elim[r] and r not in rules:
                rules[r] = self._constraints[s]
        group_constr = np.zeros(n, dtype=bool)
        group_constr[np.array(sorted(rules), dtype=int)] = True
        uroots = np.unique(roots)
        free_roots = uroots[~group_elim[uroots] & ~group_constr[uroots]]
        elim_roots = uroots[group_elim[uroots]]
        constr_roots = uroots[group_constr[uroots]]
        nf, ne = len(free_roots), len(elim_roots)
        number = np.empty(n, dtype=int)
        number[free_roots] = np.arange(nf)
        number[elim_roots] = nf + np.arange(ne)
        number[constr_roots] = nf + ne + np.arange(len(constr_roots))
        self._index = number[roots]
        self.free_size = nf
        self.boundary_size = ne
        self.size = nf + ne
        self.constrained_size = len(constr_roots)
        self.constraints = self._resolve_constraints([rules[r] for r in constr_roots])
        self._finalized = True
        logger.debug('DofMapper: %d free, %d eliminated and %d constrained dofs on %d patches',
                     self.free_size, self.boundary_size, self.constrained_size, len(self.sizes))

    def _resolve_constraints(self, rules):
        """Matrix `(constrained_size, size)` expressing the constrained DOFs
        by the independent ones."""
        nc, size = len(rules), self.size
        if nc == 0:
            return scipy.sparse.csr_matrix((0, size))
        rows = np.concatenate([np.full(len(w), i) for i, (_, w) in enumerate(rules)])
        cols = np.concatenate([self._index[masters] for (masters, _) in rules])
        vals = np.concatenate([w for (_, w) in rules])
        T = scipy.sparse.csr_matrix((vals, (rows, cols)), shape=(nc, size + nc))
        A, B = T[:, :size], T[:, size:]
        # substitute constrained masters: C = A + B A + B² A + ...
        C, Bk = A, B
        for _ in range(nc):
            if Bk.nnz == 0:
                break
            C = C + Bk @ A
            Bk = Bk @ B
        else:
            raise ValueError('cyclic constraints on non-conforming interfaces')
        C = C.tocsr()
        C.eliminate_zeros()
        return C

    def expand(self, dofs):
        """Express global indices by independent DOFs.

        Returns:
            a pair `(targets, W)` of indices in `[0, size)` and an array of
            shape `(len(dofs), len(targets))` such that the function with
            index `dofs[i]` is the combination `sum_j W[i,j] * targets[j]`;
            if no index is constrained, `(dofs, None)` is returned
        """
        self._check_final()
        dofs = np.asarray(dofs)
        dep = dofs >= self.size
        if not dep.any():
            return dofs, None
        C = self.constraints[dofs[dep] - self.size].tocoo()
        targets = np.unique(np.concatenate((dofs[~dep], C.col)))
        W = np.zeros((len(dofs), len(targets)))
        indep = np.flatnonzero(~dep)
        np.add.at(W, (indep, np.searchsorted(targets, dofs[indep])), 1.0)
        np.add.at(W, (np.flatnonzero(dep)[C.row], np.searchsorted(targets, C.col)), C.data)
        return targets, W

    def rebuild(self):
        """Allow further modification after :meth:`finalize`."""
        self._finalized = False
        self._index = None

    @property
    def finalized(self):
        return self._finalized

    def _check_final(self):
        if not self._finalized:
            raise RuntimeError('DofMapper has not been finalized')

    def local_to_global(self, indices, patch=0, comp=0):
        """Global indices of the local functions `indices` of `patch`."""
        self._check_final()
        return self._index[self._prov(indices, patch, comp)]

    def index(self, i, patch=0, comp=0):
        return int(self.local_to_global(i, patch, comp))

    def is_free_index(self, g):
        return g < self.free_size

    def is_free(self, i, patch=0, comp=0):
        return self.index(i, patch, comp) < self.free_size

    def is_boundary(self, i, patch=0, comp=0):
        return self.free_size <= self.index(i, patch, comp) < self.size

    def is_constrained(self, i, patch=0, comp=0):
        return self.index(i, patch, comp) >= self.size

    def bindex(self, i, patch=0, comp=0):
        """Index of an eliminated function among the eliminated DOFs."""
        g = self.index(i, patch, comp)
        assert self.free_size <= g < self.size, 'not an eliminated dof'
        return g - self.free_size

    def global_to_local(self, g):
        """All `(patch, index, comp)` triples mapped to the global index `g`."""
        self._check_final()
        result = []
        for prov in np.flatnonzero(self._index == g):
            comp, rem = divmod(int(prov), self.total_local)
            patch = int(np.searchsorted(self.patch_offsets, rem, side='right') - 1)
            result.append((patch, rem - int(self.patch_offsets[patch]), comp))
        return result

    def patch_dofs(self, patch, comp=0):
        """Global indices of all local functions of `patch`."""
        return self.local_to_global(np.arange(self.sizes[patch]), patch, comp)


def match_tensor(intf, basis1, basis2):
    """Pairs of local indices of tensor product functions which coincide on an interface.

    Returns:
        a pair of index arrays `(I1, I2)`
    """
    sdim = basis1.sdim
    n1, n2 = basis1.shape, basis2.shape
    ax1, _ = intf.side1
    ax2, sd2 = intf.side2
    I1 = basis1.boundary_indices((tuple(intf.side1),))
    I2 = basis2.boundary_indices((tuple(intf.side2),))
    if len(I1) != len(I2):
        raise ValueError('sizes do not match: %d functions on side %s of patch %d, %d on side %s of patch %d'
                % (len(I1), intf.side1, intf.patch1, len(I2), intf.side2, intf.patch2))
    multi1 = np.unravel_index(I1, n1)
    multi2 = sdim * [None]
    for j1 in range(sdim):
        a1 = sdim - 1 - j1
        a2 = sdim - 1 - intf.dir_map[j1]
        if a1 == ax1:
            continue
        if n1[a1] != n2[a2]:
            raise ValueError('sizes do not match: %d != %d functions along interface direction %d'
                    % (n1[a1], n2[a2], j1))
        m = multi1[a1]
        multi2[a2] = m if intf.dir_orientation[j1] else n2[a2] - 1 - m
    multi2[ax2] = np.full(len(I1), n2[ax2] - 1 if sd2 else 0)
    return I1, np.ravel_multi_index(tuple(multi2), n2)

def _tangential_knots(intf, basis1, basis2):
    # per tangential direction: zyx axes on both patches, the knot vector of
    # patch 1 mapped onto the parameter interval of patch 2, that of patch 2,
    # and whether the direction is reversed
    sdim = basis1.sdim
    result = []
    for j1 in range(sdim):
        a1 = sdim - 1 - j1
        a2 = sdim - 1 - intf.dir_map[j1]
        if a1 == intf.side1[0]:
            continue
        kv1, kv2 = basis1.kvs[a1], basis2.kvs[a2]
        (lo1, hi1), (lo2, hi2) = kv1.support(), kv2.support()
        t = (kv1.kv - lo1) / (hi1 - lo1)
        flip = not intf.dir_orientation[j1]
        if flip:
            t = 1.0 - t[::-1]
        result.append((a1, a2, bspline.KnotVector(lo2 + t * (hi2 - lo2), kv1.p), kv2, flip))
    return result

def _side_flat(basis, side, axes, maps, multi):
    ax, sd = side
    idx = basis.sdim * [None]
    idx[ax] = np.full(len(multi[0]), basis.shape[ax] - 1 if sd else 0)
    for a, m, i in zip(axes, maps, multi):
        idx[a] = m[i]
    return np.ravel_multi_index(tuple(idx), basis.shape)

def nested_interface(intf, basis1, basis2):
    """Coupling of a tensor product interface whose side spaces are nested.

    The functions on the finer side are expressed through the functions on
    the coarser side by the tensor product of the 1D prolongations
    (:func:`.bspline.prolongation`) along the interface.

    Returns:
        `None` if the sides are conforming, otherwise a tuple `(fine,
        I_fine, coarse, I_coarse, P)`: the side functions `I_fine` of patch
        `fine` are ``P @`` the side functions `I_coarse` of patch `coarse`

    Raises:
        ValueError: if the side spaces are neither equal nor nested
    """
    dirs = _tangential_knots(intf, basis1, basis2)
    if all(kv1.p == kv2.p and len(kv1.kv) == len(kv2.kv) and np.allclose(kv1.kv, kv2.kv)
           for (_, _, kv1, kv2, _) in dirs):
        return None
    if all(bspline.is_sub_space(kv1, kv2) for (_, _, kv1, kv2, _) in dirs):
        coarse_first = True
    elif all(bspline.is_sub_space(kv2, kv1) for (_, _, kv1, kv2, _) in dirs):
        coarse_first = False
    else:
        raise ValueError('sizes do not match: the sides %s of patch %d and %s of patch %d are neither conforming nor nested'
                % (intf.side1, intf.patch1, intf.side2, intf.patch2))

    factors, faxes, caxes, fmaps, cmaps = [], [], [], [], []
    for (a1, a2, kv1, kv2, flip) in dirs:
        n1, n2 = kv1.numdofs, kv2.numdofs
        map1 = np.arange(n1)[::-1] if flip else np.arange(n1)
        if coarse_first:
            factors.append(bspline.prolongation(kv1, kv2))
            faxes.append(a2); fmaps.append(np.arange(n2))
            caxes.append(a1); cmaps.append(map1)
        else:
            factors.append(bspline.prolongation(kv2, kv1))
            faxes.append(a1); fmaps.append(map1)
            caxes.append(a2); cmaps.append(np.arange(n2))
    K = functools.reduce(scipy.sparse.kron, factors).tocoo()
    rmulti = np.unravel_index(K.row, tuple(P.shape[0] for P in factors))
    cmulti = np.unravel_index(K.col, tuple(P.shape[1] for P in factors))

    if coarse_first:
        fine, coarse = (intf.patch2, basis2, intf.side2), (intf.patch1, basis1, intf.side1)
    else:
        fine, coarse = (intf.patch1, basis1, intf.side1), (intf.patch2, basis2, intf.side2)
    I = _side_flat(fine[1], fine[2], faxes, fmaps, rmulti)
    J = _side_flat(coarse[1], coarse[2], caxes, cmaps, cmulti)
    If, rows = np.unique(I, return_inverse=True)
    Jc, cols = np.unique(J, return_inverse=True)
    P = scipy.sparse.csr_matrix((K.data, (rows, cols)), shape=(len(If), len(Jc)))
    logger.debug('nested interface: %d functions of patch %d constrained by %d functions of patch %d',
                 len(If), fine[0], len(Jc), coarse[0])
    return fine[0], If, coarse[0], Jc, P

def _hier_keys(basis, side, lmax, frame=None):
    """Matching keys of the boundary functions of a hierarchical basis.

    A key consists of the level and the tangential support box, left-shifted
    to the level `lmax`. If `frame` is given, the boxes are transformed into
    the frame of the other patch; it is a list of triples `(a1, a2, flip,
    nfine)` mapping zyx axis `a1` to `a2`.
    """
    ax = side[0]
    indices = basis.boundary_indices((tuple(side),))
    keys = []
    for i in indices:
        lv, box = basis.support_box(i)
        shift = lmax - lv
        fine = [(lo << shift, hi << shift) for (lo, hi) in box]
        if frame is None:
            k = tuple(fine[a] for a in range(basis.sdim) if a != ax)
        else:
            mapped = {}
            for (a1, a2, flip, nfine) in frame:
                lo, hi = fine[a1]
                mapped[a2] = (nfine - hi, nfine - lo) if flip else (lo, hi)
            k = tuple(mapped[a] for a in sorted(mapped))
        keys.append((lv, k))
    return indices, keys

def match_hierarchical(intf, basis1, basis2):
    """Pairs of local indices of hierarchical functions which coincide on an interface.

    Both sides are lifted to a common finest level by left-shifting mesh
    indices; the boxes of patch 1 are transformed by the direction map and
    orientation of the interface and then matched with those of patch 2 on
    the same level.

    Returns:
        a pair of index arrays `(I1, I2)`
    """
    sdim = basis1.sdim
    lmax = max(basis1.numlevels, basis2.numlevels) - 1
    ax1 = intf.side1[0]
    spans1 = basis1.mesh(0).numspans
    spans2 = basis2.mesh(0).numspans
    frame = []
    for j1 in range(sdim):
        a1 = sdim - 1 - j1
        a2 = sdim - 1 - intf.dir_map[j1]
        if a1 == ax1:
            continue
        if spans1[a1] != spans2[a2]:
            raise ValueError('sizes do not match: %d != %d knot spans along interface direction %d'
                    % (spans1[a1], spans2[a2], j1))
        frame.append((a1, a2, not intf.dir_orientation[j1], spans2[a2] << lmax))

    I1, keys1 = _hier_keys(basis1, intf.side1, lmax, frame)
    I2, keys2 = _hier_keys(basis2, intf.side2, lmax)
    if len(I1) != len(I2):
        raise ValueError('sizes do not match: %d functions on side %s of patch %d, %d on side %s of patch %d'
                % (len(I1), intf.side1, intf.patch1, len(I2), intf.side2, intf.patch2))
    lookup = dict(zip(keys2, I2))
    try:
        J2 = np.array([lookup[k] for k in keys1], dtype=int)
    except KeyError as e:
        raise ValueError('sizes do not match: function with key %s on patch %d has no counterpart on patch %d'
                % (e.args[0], intf.patch1, intf.patch2))
    return I1, J2


def build(multibasis, bcs=None, ncomp=1, interfaces=True):
    """Build and finalize a :class:`DofMapper` for a :class:`.MultiBasis`.

    Args:
        multibasis (:class:`.MultiBasis`): the bases and their topology
        bcs (:class:`.BoundaryConditions`): functions on Dirichlet sides are eliminated
        ncomp (int): number of components
        interfaces (bool): whether to match functions across interfaces
    """
    mapper = DofMapper(multibasis.sizes(), ncomp)
    if interfaces:
        for intf in multibasis.interfaces:
            mapper.match_interface(intf, multibasis[intf.patch1], multibasis[intf.patch2])
    if bcs is not None:
        for bc in bcs.dirichlet_sides(multibasis.sdim):
            basis = multibasis[bc.patch]
            mapper.mark_boundary(bc.patch, basis.boundary_indices((bc.side,)), bc.comp)
    mapper.finalize()
    return mapper
