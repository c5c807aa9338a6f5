"""Hierarchical B-spline (HB-spline) bases over dyadically refined meshes.

A tensor product B-spline basis function is referred to by a multi-index
`(i_1, ..., i_d)` (zyx order), cells in a tensor product mesh by multi-indices
`(j_1, ..., j_d)` of knot spans. Level `l+1` is obtained from level `l` by
bisecting every knot span, so the children of cell `j` are the cells
`2j, 2j+1` along each axis.

The hierarchical domains are `Ω_l = ` union of the active and deactivated
cells on level `l`. A function of level `l` is active if its support is
contained in `Ω_l` but not in `Ω_{l+1}`.

Whenever an ordering of the degrees of freedom is required, we use the
following **canonical order**: first, all active basis function on the coarsest
level, then all active basis functions on the next finer level, and so on until
the finest level. Within each level, the functions are ordered
lexicographically with respect to their tensor product multi-indices.
The canonical order on active cells (the integration elements) is defined in
the same way.
"""
import itertools

import numpy as np

from . import bspline
from .bspline import BasisKind, Element, TensorBasis


def _compute_supported_functions(kv, meshsupp):
    """Compute an array containing for each cell the index of the first and
    one beyond the last function supported in it.
    """
    n = kv.numspans
    sf = np.zeros((n,2), dtype=meshsupp.dtype)
    sf[:,0] = kv.numdofs
    for j in range(meshsupp.shape[0]):
        for k in range(meshsupp[j,0], meshsupp[j,1]):
            sf[k,0] = min(sf[k,0], j)
            sf[k,1] = max(sf[k,1], j + 1)
    return sf


class TPMesh:
    """A tensor product mesh described by a sequence of knot vectors."""
    def __init__(self, kvs):
        self.kvs = tuple(kvs)
        self.dim = len(kvs)
        self.numspans = tuple(kv.numspans for kv in kvs)
        self.numdofs = tuple(kv.numdofs for kv in kvs)
        self.meshsupp = tuple(kv.mesh_support_idx_all() for kv in self.kvs)
        self.suppfunc = tuple(_compute_supported_functions(kv,ms) for (kv,ms) in zip(self.kvs, self.meshsupp))

    def refine(self):
        return TPMesh([kv.refine() for kv in self.kvs])

    def cells(self):
        """Return a list of all cells in this mesh."""
        return list(itertools.product(
            *(range(n) for n in self.numspans)))

    def cell_extents(self, c):
        """Return the extents (as a tuple of min/max pairs) of the cell `c`."""
        return tuple((kv.mesh[cd], kv.mesh[cd+1]) for (kv,cd) in zip(self.kvs, c))

    def support_box(self, jj):
        """Mesh index range `(lo, hi)` per axis of the support of function `jj`."""
        return tuple((int(self.meshsupp[d][j,0]), int(self.meshsupp[d][j,1])) for (d,j) in enumerate(jj))

    def support(self, indices):
        """Return the set of cells where any of the given functions does not vanish."""
        supp = set()
        for jj in indices:
            supp.update(itertools.product(
                *(range(lo, hi) for (lo, hi) in self.support_box(jj))))
        return supp

    def supported_in(self, cells):
        """Return the set of functions whose support intersects the given cells."""
        funcs = set()
        sf = self.suppfunc
        for kk in cells:
            funcs.update(itertools.product(
                *(range(sf[d][k,0], sf[d][k,1]) for (d,k) in enumerate(kk))))
        return funcs


class HMesh:
    """A hierarchical mesh built on a sequence of uniformly refined tensor product meshes."""
    def __init__(self, mesh):
        self.dim = mesh.dim
        self.meshes = [mesh]
        self.active = [set(mesh.cells())]
        self.deactivated = [set()]

    def add_level(self):
        self.meshes.append(self.meshes[-1].refine())
        self.active.append(set())
        self.deactivated.append(set())

    def ensure_levels(self, L):
        """Make sure that the hierarchical mesh has at least `L` levels."""
        while len(self.meshes) < L:
            self.add_level()

    def cell_children(self, lv, cells):
        assert 0 <= lv < len(self.meshes) - 1, 'Invalid level'
        children = []
        for c in cells:
            children.extend(itertools.product(
                *(range(2*ci, 2*(ci + 1)) for ci in c)))
        return children

    def domain(self, lv):
        """The cells of level `lv` which make up the subdomain `Ω_lv`."""
        if lv >= len(self.meshes):
            return set()
        return self.active[lv] | self.deactivated[lv]

    def refine(self, marked):
        # NB: if refining on lv 0, we need 2 levels (0 and 1) -- hence the +2
        max_lv = max(lv for (lv,cells) in marked.items() if cells)
        self.ensure_levels(max_lv + 2)

        new_cells = dict()
        for lv in range(len(self.meshes) - 1):
            cells = set(marked.get(lv, []))
            if not cells <= self.active[lv]:
                raise ValueError('can only refine active cells (level %d: %s)'
                        % (lv, sorted(cells - self.active[lv])))
            # deactivate refined cells
            self.active[lv] -= cells
            self.deactivated[lv] |= cells
            # add children
            new_cells[lv+1] = self.cell_children(lv, cells)
            self.active[lv+1] |= set(new_cells[lv+1])
        return new_cells


class HierarchicalBasis:
    """An HB-spline basis over a hierarchical mesh whose coarsest level is
    the tensor product space over `kvs`.

    Args:
        kvs (seq): tuple of :class:`.KnotVector` (zyx order); interior knots
            must be single so that a function is determined by its support

    Functions are numbered in the canonical order (see module documentation).
    """
    kind = BasisKind.HIERARCHICAL

    def __init__(self, kvs):
        if isinstance(kvs, bspline.KnotVector):
            kvs = (kvs,)
        for kv in kvs:
            assert kv.kv.size == kv.mesh.size + 2 * kv.p, \
                'hierarchical bases require single interior knots'
        self.sdim = len(kvs)
        self.hmesh = HMesh(TPMesh(kvs))
        self._update()

    def __repr__(self):
        return '<HierarchicalBasis levels=%d size=%d>' % (self.numlevels, self.size)

    @property
    def kvs(self):
        return self.hmesh.meshes[0].kvs

    @property
    def numlevels(self):
        """The number of levels in this hierarchical space."""
        return len(self.hmesh.meshes)

    def mesh(self, lv):
        """Return the underlying :class:`TPMesh` on the given level."""
        return self.hmesh.meshes[lv]

    def tensor_basis(self, lv):
        return TensorBasis(self.mesh(lv).kvs)

    def degree(self, j):
        return self.kvs[self.sdim - 1 - j].p

    @property
    def max_degree(self):
        return max(kv.p for kv in self.kvs)

    @property
    def support(self):
        return tuple(kv.support() for kv in self.kvs)

    def _update(self):
        """Recompute the active functions on all levels."""
        self.actfun = []
        for lv in range(self.numlevels):
            mesh = self.mesh(lv)
            dom = self.hmesh.domain(lv)
            cands = mesh.supported_in(self.hmesh.active[lv])
            act = sorted(jj for jj in cands if mesh.support([jj]) <= dom)
            self.actfun.append(act)
        self._flat = [np.array([np.ravel_multi_index(jj, self.mesh(lv).numdofs) for jj in act], dtype=int)
                      for lv, act in enumerate(self.actfun)]
        sizes = [len(act) for act in self.actfun]
        self._offsets = np.concatenate(([0], np.cumsum(sizes))).astype(int)
        self.size = int(self._offsets[-1])
        self._hindex = {}
        for lv in range(self.numlevels):
            for k, f in enumerate(self._flat[lv]):
                self._hindex[(lv, int(f))] = int(self._offsets[lv] + k)

    def refine(self, marked):
        """Refine the given active cells.

        Args:
            marked (dict): maps levels to sequences of cell multi-indices
        """
        self.hmesh.refine(marked)
        self._update()

    def refine_region(self, lower, upper, level=None):
        """Refine all active cells which lie inside the box `[lower, upper]`
        (corners in xyz order). If `level` is given, only cells on that level
        are considered."""
        lower = np.asarray(lower)[::-1]     # to zyx order
        upper = np.asarray(upper)[::-1]
        marked = {}
        for lv in range(self.numlevels):
            if level is not None and lv != level:
                continue
            mesh = self.mesh(lv)
            cells = [c for c in self.hmesh.active[lv]
                     if all(lower[d] <= lo and hi <= upper[d]
                            for d, (lo, hi) in enumerate(mesh.cell_extents(c)))]
            if cells:
                marked[lv] = cells
        if marked:
            self.refine(marked)

    def level_of(self, i):
        """Level of the hierarchical function `i`."""
        return int(np.searchsorted(self._offsets, i, side='right') - 1)

    def flat_index(self, i):
        """Flat tensor index of the function `i` on its own level."""
        lv = self.level_of(i)
        return int(self._flat[lv][i - self._offsets[lv]])

    def tensor_index(self, i):
        lv = self.level_of(i)
        return self.actfun[lv][i - self._offsets[lv]]

    def hier_index(self, lv, flat):
        """Hierarchical index of the tensor function `flat` of level `lv`;
        raises `KeyError` if that function is not active."""
        return self._hindex[(lv, int(flat))]

    def support_box(self, i):
        """Level and mesh support box `((lo, hi), ...)` (zyx) of function `i`."""
        lv = self.level_of(i)
        return lv, self.mesh(lv).support_box(self.tensor_index(i))

    def elements(self):
        """Generate the active cells in canonical order."""
        k = 0
        for lv in range(self.numlevels):
            mesh = self.mesh(lv)
            for c in sorted(self.hmesh.active[lv]):
                ext = mesh.cell_extents(c)
                yield Element(k, np.array([e[0] for e in reversed(ext)]),
                                 np.array([e[1] for e in reversed(ext)]))
                k += 1

    def num_elements(self):
        return sum(len(a) for a in self.hmesh.active)

    def boundary_elements(self, bdspec):
        ax, side = bspline.parse_side(bdspec, self.sdim)
        j = self.sdim - 1 - ax
        value = self.kvs[ax].support()[side]
        for el in self.elements():
            if el.lower[j] == value or el.upper[j] == value:
                lower, upper = el.lower.copy(), el.upper.copy()
                lower[j] = upper[j] = value
                yield Element(el.index, lower, upper)

    def _select(self, pred):
        result = []
        for lv in range(self.numlevels):
            n = self.mesh(lv).numdofs
            result.extend(self._offsets[lv] + k
                          for k, jj in enumerate(self.actfun[lv]) if pred(jj, n))
        return np.array(result, dtype=int)

    def boundary_indices(self, bdspec):
        """Indices of the active functions which are nonzero on the given side(s)."""
        bd = bspline._parse_bdspec(bdspec, self.sdim)
        return self._select(lambda jj, n:
                all(jj[ax] == (n[ax] - 1 if side else 0) for ax, side in bd))

    def corner_indices(self):
        return self._select(lambda jj, n:
                all(j in (0, nj - 1) for j, nj in zip(jj, n)))

    def active(self, points):
        return self.eval_derivs(points, 0)[0]

    def eval_derivs(self, points, order=0):
        """Evaluate the active functions and derivatives at `points`; same
        output format as :meth:`.TensorBasis.eval_derivs`."""
        actives, values = [], []
        for lv in range(self.numlevels):
            if not self.actfun[lv]:
                continue
            act_lv, vals_lv = self.tensor_basis(lv).eval_derivs(points, order)
            keep = [k for k, f in enumerate(act_lv) if (lv, int(f)) in self._hindex]
            if not keep:
                continue
            actives.extend(self._hindex[(lv, int(act_lv[k]))] for k in keep)
            values.append([v[:, keep] for v in vals_lv])
        actives = np.array(actives, dtype=int)
        result = [np.concatenate([v[r] for v in values], axis=1) for r in range(order + 1)]
        return actives, result
