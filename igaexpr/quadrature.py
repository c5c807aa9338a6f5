import functools

import numpy as np


@functools.lru_cache(maxsize=32)
def _leggauss(deg):
    return np.polynomial.legendre.leggauss(deg)

def gauss_rule(deg, a=-1.0, b=1.0):
    """Return nodes and weights for Gauss-Legendre rule with `deg` nodes in (a,b).

    a and b may be arrays containing the start and end points of several
    intervals; the rule is then iterated over all of them."""
    a, b = np.atleast_1d(np.asarray(a, dtype=float)), np.atleast_1d(np.asarray(b, dtype=float))
    m = 0.5*(a + b)     # array of interval midpoints
    h = 0.5*(b - a)     # array of halved interval lengths
    x,w = _leggauss(deg)
    nodes   = (np.outer(h,x) + m[:, np.newaxis])
    weights = np.outer(h,w)
    return (nodes.ravel(), weights.ravel())


class QuadRule:
    """Tensor product Gauss-Legendre rule.

    Args:
        num_nodes (seq): number of nodes per coordinate direction (xyz order)
    """
    def __init__(self, num_nodes):
        self.num_nodes = tuple(int(n) for n in num_nodes)
        assert all(n >= 1 for n in self.num_nodes), 'need at least one node per direction'
        self.sdim = len(self.num_nodes)

    def __repr__(self):
        return 'QuadRule(%s)' % (self.num_nodes,)

    def __eq__(self, other):
        return isinstance(other, QuadRule) and self.num_nodes == other.num_nodes

    def __hash__(self):
        return hash(self.num_nodes)

    def map_to(self, lower, upper):
        """Map the rule to the box `[lower, upper]` (corners in xyz order).

        Directions with `lower[j] == upper[j]` are collapsed to a single node
        with weight 1; this yields rules for boundary sides.

        Returns:
            a pair `(points, weights)` with `points` of shape `(nq, sdim)` (xyz
            columns) and `weights` of shape `(nq,)`. The x coordinate runs fastest.
        """
        lower, upper = np.asarray(lower, dtype=float), np.asarray(upper, dtype=float)
        grids, wgts = [], []
        for j in range(self.sdim):
            if lower[j] == upper[j]:
                grids.append(np.array([lower[j]]))
                wgts.append(np.ones(1))
            else:
                x, w = gauss_rule(self.num_nodes[j], lower[j], upper[j])
                grids.append(x)
                wgts.append(w)
        # zyx ordering in meshgrid makes x the fastest running index
        X = np.meshgrid(*reversed(grids), indexing='ij')
        W = np.meshgrid(*reversed(wgts), indexing='ij')
        points = np.stack([X[self.sdim - 1 - j].ravel() for j in range(self.sdim)], axis=-1)
        weights = functools.reduce(np.multiply, W).ravel()
        return points, weights


def get_quadrature(basis, quA=1.0, quB=1):
    """Choose a Gauss rule for the given basis with `quA*p + quB` nodes
    (rounded) per direction, where `p` is the degree in that direction."""
    return QuadRule([int(quA * basis.degree(j) + quB + 0.5) for j in range(basis.sdim)])
