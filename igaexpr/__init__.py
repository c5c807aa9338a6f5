"""igaexpr

Expression-based assembly for Isogeometric Analysis: a symbolic algebra over
geometry maps, spline spaces and solution fields, evaluated element by element
and scattered into global sparse systems.
"""

__version__ = '0.1.0'

_max_threads = None

def get_max_threads():
    global _max_threads
    if not _max_threads:
        import multiprocessing
        _max_threads = multiprocessing.cpu_count()
    return _max_threads

def set_max_threads(num):
    global _max_threads
    _max_threads = num
