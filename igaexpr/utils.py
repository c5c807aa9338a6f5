import numpy as np


def eval_at_points(f, points):
    """Evaluate a user callable of `d` coordinates at an `(n, d)` array of points
    (columns in xyz order).

    Returns:
        ndarray of shape `(n,) + output_shape`
    """
    points = np.asarray(points, dtype=float)
    n = points.shape[0]
    values = f(*(points[:, j] for j in range(points.shape[1])))
    if isinstance(values, (tuple, list)):
        values = np.stack([np.broadcast_to(np.asarray(v, dtype=float), (n,))
                           for v in values], axis=-1)
    values = np.asarray(values, dtype=float)
    if values.ndim == 0 or values.shape[0] != n:
        values = np.broadcast_to(values, (n,) + values.shape).copy()
    return values


def _noop(self, *args, **kwargs): pass
class _DummyPbar:
    """No-op stand-in for tqdm."""
    def __init__(self, *args, **kwags):
        if len(args) > 0:
            self.r = args[0]
    def __iter__(self):
        return iter(self.r)
    def __enter__(self):
        return self
    __exit__ = _noop
    update   = _noop
    close    = _noop
    set_postfix = _noop

def progress_bar(enable=True):
    if enable:
        import tqdm
        return tqdm.tqdm
    else:
        return _DummyPbar
