from setuptools import setup


setup(
    name = 'igaexpr',
    version = '0.1.0',
    description = 'Expression-based assembly for Isogeometric Analysis',
    long_description = 'igaexpr assembles Isogeometric Analysis systems from symbolic expressions over geometry maps, spline spaces and solution fields.',

    classifiers=[
        'Programming Language :: Python :: 3',
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering :: Mathematics',
        'Topic :: Scientific/Engineering :: Physics',
    ],
    packages = ['igaexpr'],

    python_requires = '>=3.7',
    install_requires = [
        'numpy>=1.17',
        'scipy',
        'networkx',
        'tqdm',
    ],
    extras_require = {
        'test': ['pytest'],
    },
)
