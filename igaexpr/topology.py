"""Multi-patch domains: patches, interfaces, bases and boundary conditions."""
import itertools
import logging
from collections import namedtuple

import numpy as np
import scipy.spatial
import networkx as nx

from . import bspline
from .bspline import TensorBasis
from .geometry import BoundaryFunction

logger = logging.getLogger(__name__)


Interface = namedtuple('Interface',
        ['patch1', 'side1', 'patch2', 'side2', 'dir_map', 'dir_orientation'])
Interface.__doc__ = """A conforming interface between two patches.

The sides are pairs `(axis, side)` with zyx `axis`. `dir_map[j]` is the xyz
axis of patch 2 which corresponds to the xyz axis `j` of patch 1 (including
the normal axis), and `dir_orientation[j]` is False if that direction is
reversed across the interface.
"""

def _flip_interface(intf):
    inv_map = np.argsort(intf.dir_map)
    return Interface(intf.patch2, intf.side2, intf.patch1, intf.side1,
                     tuple(int(j) for j in inv_map),
                     tuple(intf.dir_orientation[j] for j in inv_map))

BoundaryCondition = namedtuple('BoundaryCondition', ['patch', 'side', 'func', 'comp'])


# helper functions for interface detection
def _bb_rect(G):
    # geo bounding box as a Rectangle
    bb = G.bounding_box()
    return scipy.spatial.Rectangle(
        tuple(bb_i[0] for bb_i in bb),
        tuple(bb_i[1] for bb_i in bb))

def _sample_points(support, grid):
    """Tensor grid of `grid` points per direction over a zyx support, as `(n, d)` xyz points."""
    axes = [np.linspace(lo, hi, grid) for (lo, hi) in reversed(support)]
    if not axes:
        return np.zeros((1, 0))
    X = np.meshgrid(*axes, indexing='ij')
    return np.stack([x.ravel() for x in X], axis=-1)

def _check_geo_match(G1, G2, grid=4, tol=1e-10):
    # check if the two boundary geos match with any possible permutation and flip
    if G1.sdim != G2.sdim or G1.dim != G2.dim:
        return False, (None, None)
    d = G1.sdim
    S1 = np.array(list(reversed(G1.support)), dtype=float).reshape((d, 2))     # xyz order
    S2 = np.array(list(reversed(G2.support)), dtype=float).reshape((d, 2))
    T1 = _sample_points(G1.support, grid)
    X1 = G1.pointwise_derivs(T1, 0)[0]
    scale = max(np.abs(X1).max(), 1.0)
    # normalized coordinates in [0,1]
    U = (T1 - S1[:, 0]) / (S1[:, 1] - S1[:, 0]) if d > 0 else T1

    for perm in itertools.permutations(range(d)):
        for flip in itertools.product(*(d * [(False, True)])):
            T2 = np.empty_like(T1)
            for j in range(d):      # axis j of G1 corresponds to axis perm[j] of G2
                u = 1.0 - U[:, j] if flip[j] else U[:, j]
                lo, hi = S2[perm[j]]
                T2[:, perm[j]] = lo + u * (hi - lo)
            X2 = G2.pointwise_derivs(T2, 0)[0]
            if np.abs(X1 - X2).max() <= tol * scale:
                return True, (perm, flip)
    return False, (None, None)

def _tangential_axes(sdim, axis):
    # xyz axes of a patch which remain on the side with the given zyx normal axis
    nxyz = sdim - 1 - axis
    return [j for j in range(sdim) if j != nxyz]

def _make_interface(p1, side1, p2, side2, sdim, perm, flip):
    t1 = _tangential_axes(sdim, side1[0])
    t2 = _tangential_axes(sdim, side2[0])
    dir_map = sdim * [0]
    orient = sdim * [True]
    for j in range(sdim - 1):
        dir_map[t1[j]] = t2[perm[j]]
        orient[t1[j]] = not flip[j]
    n1, n2 = sdim - 1 - side1[0], sdim - 1 - side2[0]
    dir_map[n1] = n2
    orient[n1] = (side1[1] != side2[1])
    return Interface(p1, side1, p2, side2, tuple(dir_map), tuple(orient))

def _all_sides(sdim):
    return list(itertools.product(range(sdim), (0, 1)))

def detect_interfaces(geos, tol=1e-10, grid=4):
    """Automatically detect matching interfaces between patches.

    Args:
        geos: a list of geometry maps
        tol (float): relative tolerance for matching sampled boundary points
        grid (int): number of samples per direction on each side

    Returns:
        a pair `(interfaces, boundaries)`: a list of :class:`Interface`
        and a list of the remaining outer sides as pairs `(patch, side)`
    """
    interfaces = []
    bbs = [_bb_rect(geo) for geo in geos]
    diams = [bb.max_distance_rectangle(bb) for bb in bbs]
    matched = set()

    for p1 in range(len(geos)):
        for p2 in range(p1 + 1, len(geos)):
            mindist = bbs[p1].min_distance_rectangle(bbs[p2])
            maxdiam = max(diams[p1], diams[p2])
            if mindist > 1e-10 * maxdiam:    # bounding boxes do not touch
                continue
            G1, G2 = geos[p1], geos[p2]
            if G1.sdim != G2.sdim:
                continue
            for side1 in _all_sides(G1.sdim):
                if (p1, side1) in matched:
                    continue
                bd1 = BoundaryFunction(G1, (side1,))
                for side2 in _all_sides(G2.sdim):
                    if (p2, side2) in matched:
                        continue
                    match, (perm, flip) = _check_geo_match(bd1, BoundaryFunction(G2, (side2,)), grid=grid, tol=tol)
                    if match:
                        interfaces.append(_make_interface(p1, side1, p2, side2, G1.sdim, perm, flip))
                        matched.add((p1, side1))
                        matched.add((p2, side2))
                        break
    boundaries = [(p, side) for p, geo in enumerate(geos)
                  for side in _all_sides(geo.sdim) if (p, side) not in matched]
    logger.debug('detected %d interfaces and %d boundary sides on %d patches',
                 len(interfaces), len(boundaries), len(geos))
    return interfaces, boundaries

def patch_graph(numpatches, interfaces):
    """Connectivity graph of the patches (a :class:`networkx.Graph`)."""
    graph = nx.Graph()
    graph.add_nodes_from(range(numpatches))
    graph.add_edges_from((intf.patch1, intf.patch2) for intf in interfaces)
    return graph


class MultiPatch:
    """A domain consisting of several geometry patches.

    Args:
        geos: a list of geometry maps (e.g. :class:`.BSplineFunc`)
        interfaces: a list of :class:`Interface`; detected automatically if `None`
        tol (float): tolerance for interface detection
    """
    def __init__(self, geos, interfaces=None, tol=1e-10):
        if hasattr(geos, 'pointwise_derivs'):
            geos = [geos]
        self.patches = list(geos)
        self.sdim = self.patches[0].sdim
        self.dim = self.patches[0].dim
        if interfaces is None:
            self.interfaces, self.boundaries = detect_interfaces(self.patches, tol=tol)
        else:
            self.interfaces = list(interfaces)
            used = set((i.patch1, tuple(i.side1)) for i in self.interfaces) | \
                   set((i.patch2, tuple(i.side2)) for i in self.interfaces)
            self.boundaries = [(p, side) for p in range(len(self.patches))
                               for side in _all_sides(self.sdim) if (p, side) not in used]

    def __len__(self):
        return len(self.patches)

    def __getitem__(self, i):
        return self.patches[i]

    @property
    def numpatches(self):
        return len(self.patches)

    def is_connected(self):
        return nx.is_connected(patch_graph(self.numpatches, self.interfaces))

    def interfaces_of(self, patch):
        """All interfaces of `patch`, oriented so that `patch` is the first patch."""
        result = []
        for intf in self.interfaces:
            if intf.patch1 == patch:
                result.append(intf)
            elif intf.patch2 == patch:
                result.append(_flip_interface(intf))
        return result


class MultiBasis:
    """One basis per patch together with the patch topology.

    Args:
        bases: a list of bases (:class:`.TensorBasis`, :class:`.HierarchicalBasis`
            or :class:`.ComposedBasis`)
        topology (:class:`MultiPatch`): source of the interfaces and outer
            boundaries; without it, the patches are uncoupled
    """
    def __init__(self, bases, topology=None):
        self.bases = list(bases)
        self.topology = topology
        if topology is not None:
            assert topology.numpatches == len(self.bases), 'need one basis per patch'
            self.interfaces = list(topology.interfaces)
            self.boundaries = list(topology.boundaries)
        else:
            self.interfaces = []
            self.boundaries = [(p, side) for p, b in enumerate(self.bases)
                               for side in _all_sides(b.sdim)]

    @staticmethod
    def from_multipatch(mp):
        """The tensor product bases over the knot vectors of the B-spline patches of `mp`."""
        return MultiBasis([TensorBasis(geo.kvs) for geo in mp.patches], mp)

    def __len__(self):
        return len(self.bases)

    def __getitem__(self, i):
        return self.bases[i]

    @property
    def numpatches(self):
        return len(self.bases)

    @property
    def sdim(self):
        return self.bases[0].sdim

    def sizes(self):
        return [b.size for b in self.bases]

    def max_degree(self):
        return max(b.max_degree for b in self.bases)

    def refine(self):
        """Return the uniformly refined multi-basis (tensor product bases only)."""
        return MultiBasis([b.refine() for b in self.bases], self.topology)


class BoundaryConditions:
    """Dirichlet and Neumann data on patch sides.

    Dirichlet functions may be constants, callables of the physical
    coordinates (if a geometry is set) or of the parametric coordinates.

    Args:
        geometry: a :class:`MultiPatch` or list of geometry maps through
            which Dirichlet functions are evaluated
    """
    def __init__(self, geometry=None):
        self.dirichlet = []
        self.neumann = []
        self.set_geometry(geometry)

    def set_geometry(self, geometry):
        if geometry is not None and not hasattr(geometry, 'patches'):
            geometry = MultiPatch(geometry, interfaces=[])
        self.geometry = geometry

    def add_dirichlet(self, patch, side, func=0.0, comp=None):
        """Prescribe `func` on the given side; `comp=None` applies to all components."""
        self.dirichlet.append(BoundaryCondition(patch, side, func, comp))

    def add_neumann(self, patch, side, func):
        self.neumann.append(BoundaryCondition(patch, side, func, None))

    def add_all_dirichlet(self, boundaries, func=0.0, comp=None):
        """Prescribe `func` on all given `(patch, side)` pairs, e.g., the
        outer boundaries of a :class:`MultiPatch`."""
        if hasattr(boundaries, 'boundaries'):
            boundaries = boundaries.boundaries
        for (p, side) in boundaries:
            self.add_dirichlet(p, (side,), func, comp)

    def dirichlet_sides(self, sdim):
        """Yield the Dirichlet conditions with sides normalized to `(axis, side)`."""
        for bc in self.dirichlet:
            yield bc._replace(side=bspline.parse_side(bc.side, sdim))

    def neumann_sides(self, sdim):
        for bc in self.neumann:
            yield bc._replace(side=bspline.parse_side(bc.side, sdim))
