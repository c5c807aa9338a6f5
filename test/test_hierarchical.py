import numpy as np
import pytest

from igaexpr.hierarchical import *
from igaexpr.bspline import make_knots, TensorBasis


def _refined_basis():
    # 2x2 mesh of bilinears; refine the lower left cell once
    kv = make_knots(1, 0.0, 1.0, 2)
    hb = HierarchicalBasis((kv, kv))
    hb.refine({0: [(0, 0)]})
    return hb

def test_unrefined():
    kv = make_knots(2, 0.0, 1.0, 3)
    hb = HierarchicalBasis((kv, kv))
    tb = TensorBasis((kv, kv))
    assert hb.numlevels == 1
    assert hb.size == tb.size
    assert hb.num_elements() == 9
    assert np.array_equal(hb.boundary_indices('left'), tb.boundary_indices('left'))
    assert np.array_equal(hb.corner_indices(), tb.corner_indices())
    pts = np.array([[0.2, 0.7]])
    a1, (v1,) = hb.eval_derivs(pts)
    a2, (v2,) = tb.eval_derivs(pts)
    assert np.array_equal(a1, a2)
    assert np.allclose(v1, v2)

def test_refine():
    hb = _refined_basis()
    assert hb.numlevels == 2
    # the level 0 function supported only in the refined cell is replaced
    # by the four fine functions whose supports lie in it
    assert len(hb.actfun[0]) == 8
    assert len(hb.actfun[1]) == 4
    assert hb.size == 12
    assert hb.num_elements() == 3 + 4
    assert hb.level_of(7) == 0 and hb.level_of(8) == 1
    assert tuple(hb.tensor_index(8)) == (0, 0)
    assert hb.flat_index(9) == 1
    assert hb.hier_index(1, 5) == 10
    with pytest.raises(KeyError):
        hb.hier_index(1, 2)
    lv, box = hb.support_box(9)
    assert lv == 1 and box == ((0, 1), (0, 2))

def test_refine_inactive_cell():
    hb = _refined_basis()
    with pytest.raises(ValueError):
        hb.refine({0: [(0, 0)]})

def test_refine_region():
    kv = make_knots(1, 0.0, 1.0, 2)
    hb = HierarchicalBasis((kv, kv))
    hb.refine_region([0.0, 0.0], [0.5, 0.5])
    assert hb.size == _refined_basis().size

def test_boundary():
    hb = _refined_basis()
    left = hb.boundary_indices('left')
    assert len(left) == 4
    assert [hb.level_of(i) for i in left] == [0, 0, 1, 1]
    assert len(list(hb.boundary_elements('left'))) == 3
    assert len(list(hb.boundary_elements('right'))) == 2
    assert len(hb.corner_indices()) == 4

def test_elements():
    hb = _refined_basis()
    els = list(hb.elements())
    assert [el.index for el in els] == list(range(7))
    # level 0 cells come first
    assert np.allclose(els[0].upper - els[0].lower, 0.5)
    assert np.allclose(els[-1].upper - els[-1].lower, 0.25)
    area = sum(np.prod(el.upper - el.lower) for el in els)
    assert np.isclose(area, 1.0)

def test_eval():
    hb = _refined_basis()
    pts = np.array([[0.1, 0.1]])
    actives, (V, D) = hb.eval_derivs(pts, 1)
    assert V.shape == (1, len(actives)) and D.shape == (1, len(actives), 2)
    # three coarse functions overlap the refined cell, plus four fine ones
    assert len(actives) == 7
    assert sorted(hb.level_of(i) for i in actives) == [0, 0, 0, 1, 1, 1, 1]
    # the fine functions reproduce the fine tensor product functions
    tb = hb.tensor_basis(1)
    ta, (tv,) = tb.eval_derivs(pts)
    for k, i in enumerate(actives):
        if hb.level_of(i) == 1:
            f = hb.flat_index(i)
            assert np.isclose(V[0, k], tv[0, list(ta).index(f)])
