import numpy as np

from igaexpr.topology import *
from igaexpr.bspline import make_knots, TensorBasis
from igaexpr import geometry


def _l_shape():
    G = geometry.unit_square()
    return [G, G.translate((1.0, 0.0)), G.translate((0.0, 1.0))]

def test_detect_interfaces():
    G = geometry.unit_square()
    interfaces, boundaries = detect_interfaces([G, G.translate((1.0, 0.0))])
    assert len(interfaces) == 1
    assert len(boundaries) == 6
    intf = interfaces[0]
    assert (intf.patch1, intf.side1, intf.patch2, intf.side2) == (0, (1, 1), 1, (1, 0))
    assert intf.dir_map == (0, 1)
    assert intf.dir_orientation == (True, True)
    assert (0, (1, 1)) not in boundaries and (1, (1, 0)) not in boundaries

def test_reversed_interface():
    G0 = geometry.unit_square()
    G1 = geometry.bilinear_patch([[1.0, 2.0, 1.0, 2.0],
                                  [1.0, 1.0, 0.0, 0.0]])
    mp = MultiPatch([G0, G1])
    assert len(mp.interfaces) == 1
    assert mp.interfaces[0].dir_orientation == (True, False)

def test_rotated_interface():
    # the second patch is rotated so that its bottom side meets the right side of the first
    G1 = geometry.bilinear_patch([[1.0, 1.0, 2.0, 2.0],
                                  [0.0, 1.0, 0.0, 1.0]])
    mp = MultiPatch([geometry.unit_square(), G1])
    intf = mp.interfaces[0]
    assert intf.side1 == (1, 1) and intf.side2 == (0, 0)
    assert intf.dir_map == (1, 0)
    assert intf.dir_orientation == (True, True)
    back = mp.interfaces_of(1)[0]
    assert back.patch1 == 1 and back.side1 == (0, 0)
    assert back.dir_map == (1, 0)

def test_multipatch():
    mp = MultiPatch(_l_shape())
    assert len(mp) == mp.numpatches == 3
    assert len(mp.interfaces) == 2
    assert len(mp.boundaries) == 3 * 4 - 2 * 2
    assert mp.is_connected()
    assert len(mp.interfaces_of(0)) == 2
    assert all(intf.patch1 == 2 for intf in mp.interfaces_of(2))
    graph = patch_graph(mp.numpatches, mp.interfaces)
    assert sorted(graph.degree(n) for n in graph.nodes) == [1, 1, 2]

def test_disconnected():
    G = geometry.unit_square()
    mp = MultiPatch([G, G.translate((3.0, 0.0))])
    assert mp.interfaces == []
    assert len(mp.boundaries) == 8
    assert not mp.is_connected()
    # explicitly given interfaces
    mp = MultiPatch([G, G.translate((3.0, 0.0))], interfaces=[])
    assert len(mp.boundaries) == 8

def test_cubes():
    G = geometry.unit_cube(3)
    mp = MultiPatch([G, G.translate((0.0, 0.0, 1.0))])
    assert len(mp.interfaces) == 1
    intf = mp.interfaces[0]
    assert intf.side1 == (0, 1) and intf.side2 == (0, 0)
    assert intf.dir_map == (0, 1, 2)
    assert len(mp.boundaries) == 10

def test_multibasis():
    mp = MultiPatch(_l_shape())
    mb = MultiBasis.from_multipatch(mp)
    assert mb.numpatches == 3 and mb.sdim == 2
    assert mb.sizes() == [4, 4, 4]
    assert len(mb.interfaces) == 2
    mb2 = mb.refine()
    assert mb2.sizes() == [9, 9, 9]
    assert mb2.topology is mp
    kv = make_knots(3, 0.0, 1.0, 2)
    mb = MultiBasis([TensorBasis((kv, kv))])
    assert mb.interfaces == []
    assert len(mb.boundaries) == 4
    assert mb.max_degree() == 3

def test_boundary_conditions():
    bcs = BoundaryConditions(geometry.unit_square())
    assert bcs.geometry.numpatches == 1
    bcs.add_dirichlet(0, 'left')
    bcs.add_dirichlet(0, 'top', lambda x, y: x, comp=1)
    bcs.add_neumann(0, 'right', lambda x, y: 1.0)
    sides = list(bcs.dirichlet_sides(2))
    assert [bc.side for bc in sides] == [(1, 0), (0, 1)]
    assert sides[0].func == 0.0 and sides[1].comp == 1
    assert [bc.side for bc in bcs.neumann_sides(2)] == [(1, 1)]

    mp = MultiPatch(_l_shape())
    bcs = BoundaryConditions(mp)
    bcs.add_all_dirichlet(mp, 1.0)
    sides = list(bcs.dirichlet_sides(2))
    assert len(sides) == len(mp.boundaries)
    assert set((bc.patch, bc.side) for bc in sides) == set(mp.boundaries)
