"""Tearing and interconnecting solvers (IETI-DP) for multi-patch problems.

Every patch is a subdomain with its own local system. Continuity across
interfaces is enforced by Lagrange multipliers through the jump matrices
`B_k`, except for a set of *primal* DOFs (by default the shared corner
functions) which are kept globally continuous. This turns the floating
subdomains into well-posed ones.

With the local saddle point matrices `K_k = [[A_k, C_kᵀ], [C_k, 0]]`, where
`C_k` selects the primal DOFs of patch `k`, the energy-minimizing primal
basis `Ψ_k` and the primal Schur complement `S_Π = Σ Ψ_kᵀ A_k Ψ_k`, the
multipliers solve `F λ = d` with::

    F = Σ B_k K_k⁻¹ B_kᵀ + B_Π S_Π⁻¹ B_Πᵀ,      B_Π = Σ B_k Ψ_k,

where `K_k⁻¹` is applied to `[v; 0]` and restricted to the first block.
`F` is symmetric and positive definite for symmetric positive definite
problems and can be solved by :func:`.pcg`.

On non-conforming interfaces, the copy of a constrained DOF is tied to the
copies of the DOFs it depends on by the jump `u_k - Σ w_j u_j = c`, where `c`
collects the contributions of eliminated DOFs; the right-hand side then
becomes `d - c`.
"""
import logging

import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from .assemble import ExprAssembler
from .dofmapper import DofMapper
from .expressions import Space
from .solvers import make_solver, pcg
from .topology import MultiBasis

logger = logging.getLogger(__name__)


class IetiSystem:
    """The IETI-DP decomposition of a multi-patch problem.

    Args:
        multipatch (:class:`.MultiPatch`): the geometry and its interfaces
        multibasis (:class:`.MultiBasis`): the discretization; by default
            the tensor product bases of the B-spline patches
        bcs (:class:`.BoundaryConditions`): Dirichlet sides are eliminated
            in the local problems
        dim (int): number of components of the unknown
        primal: ``'corners'`` to use the shared corner functions as primal
            DOFs, ``'none'`` for none, or an array of global free indices

    The local systems are given either by :meth:`assemble` or, one by one,
    by :meth:`set_local_system`.

    Raises:
        ValueError: if a subdomain has no free DOFs or is floating (has no
            eliminated DOFs) and has no primal DOFs
    """
    def __init__(self, multipatch, multibasis=None, bcs=None, dim=1, primal='corners'):
        if multibasis is None:
            multibasis = MultiBasis.from_multipatch(multipatch)
        if bcs is not None and bcs.geometry is None:
            bcs.set_geometry(multipatch)
        self.multipatch = multipatch
        self.multibasis = multibasis
        self.dim = dim
        self.space = Space(multibasis, dim=dim)
        self.space.setup(bcs)
        self.num_patches = len(multibasis)

        gm = self.space.mapper
        self.local_mappers, self.local_fixed, self.global_indices = [], [], []
        for k, basis in enumerate(multibasis.bases):
            n = basis.size
            g = np.stack([gm.local_to_global(np.arange(n), k, d) for d in range(dim)])
            # constrained copies on non-conforming interfaces stay free locally
            elim = (g >= gm.free_size) & (g < gm.size)
            lm = DofMapper([n], dim)
            for d in range(dim):
                lm.mark_boundary(0, np.flatnonzero(elim[d]), d)
            lm.finalize()
            loc = np.stack([lm.local_to_global(np.arange(n), 0, d) for d in range(dim)])
            gfree = np.empty(lm.free_size, dtype=int)
            gfree[loc[~elim]] = g[~elim]
            fixed = np.empty(lm.boundary_size)
            fixed[loc[elim] - lm.free_size] = self.space.fixed[g[elim] - gm.free_size]
            self.local_mappers.append(lm)
            self.local_fixed.append(fixed)
            self.global_indices.append(gfree)

        allg = np.concatenate(self.global_indices)
        self.multiplicity = np.bincount(allg[allg < gm.free_size], minlength=gm.free_size)
        self.primal_dofs = self._select_primal(primal)
        self._build_constraints()
        self.check_singularity()
        self.local_matrices = self.num_patches * [None]
        self.local_rhs = self.num_patches * [None]
        self._factorized = False
        logger.debug('IetiSystem: %d subdomains with %s free dofs, %d multipliers, %d primal dofs',
                     self.num_patches, [lm.free_size for lm in self.local_mappers],
                     self.num_multipliers, len(self.primal_dofs))

    def _select_primal(self, primal):
        gm = self.space.mapper
        if isinstance(primal, str):
            if primal == 'none':
                return np.zeros(0, dtype=int)
            elif primal != 'corners':
                raise ValueError('unknown primal DOF selection %r' % primal)
            corners = set()
            for k, basis in enumerate(self.multibasis.bases):
                for d in range(self.dim):
                    g = gm.local_to_global(basis.corner_indices(), k, d)
                    corners.update(int(i) for i in g if i < gm.free_size)
            return np.array(sorted(i for i in corners if self.multiplicity[i] > 1), dtype=int)
        return np.unique(np.asarray(primal, dtype=int))

    def _build_constraints(self):
        """Set up the jump matrices `B_k`, the primal selections `C_k` and the
        maps `R_k` from the primal DOFs of a patch to all primal DOFs."""
        gm = self.space.mapper
        nfree = gm.free_size
        primal_index = -np.ones(gm.size + gm.constrained_size, dtype=int)
        primal_index[self.primal_dofs] = np.arange(len(self.primal_dofs))

        # all (patch, local free index) locations of each global free dof
        owners = [[] for _ in range(nfree)]
        for k, gfree in enumerate(self.global_indices):
            for i, g in enumerate(gfree):
                if g < nfree:
                    owners[g].append((k, i))

        rows = [[] for _ in range(self.num_patches)]
        cols = [[] for _ in range(self.num_patches)]
        vals = [[] for _ in range(self.num_patches)]
        jump_rhs = []
        m = 0
        for g in range(nfree):
            if len(owners[g]) < 2 or primal_index[g] >= 0:
                continue
            # chain the copies: u_k1 - u_k2 = 0, u_k2 - u_k3 = 0, ...
            for (k1, i1), (k2, i2) in zip(owners[g][:-1], owners[g][1:]):
                rows[k1].append(m); cols[k1].append(i1); vals[k1].append(1.0)
                rows[k2].append(m); cols[k2].append(i2); vals[k2].append(-1.0)
                jump_rhs.append(0.0)
                m += 1
        # constrained copies: u_k - sum_j w_j u_j = sum of the fixed parts
        for k, gfree in enumerate(self.global_indices):
            for i in np.flatnonzero(gfree >= gm.size):
                c = gm.constraints[gfree[i] - gm.size]
                rows[k].append(m); cols[k].append(i); vals[k].append(1.0)
                fixed = 0.0
                for j, w in zip(c.indices, c.data):
                    if j < nfree:
                        k2, i2 = owners[j][0]
                        rows[k2].append(m); cols[k2].append(i2); vals[k2].append(-w)
                    else:
                        fixed += w * self.space.fixed[j - nfree]
                jump_rhs.append(fixed)
                m += 1
        self.num_multipliers = m
        self.jump_rhs = np.array(jump_rhs)
        self.jump_matrices = [
            scipy.sparse.csr_matrix((vals[k], (rows[k], cols[k])),
                                    shape=(m, len(self.global_indices[k])))
            for k in range(self.num_patches)]

        self.primal_selections, self.primal_maps = [], []
        nP = len(self.primal_dofs)
        for gfree in self.global_indices:
            local = np.flatnonzero(primal_index[gfree] >= 0)
            npk = len(local)
            self.primal_selections.append(scipy.sparse.csr_matrix(
                (np.ones(npk), (np.arange(npk), local)), shape=(npk, len(gfree))))
            self.primal_maps.append(scipy.sparse.csr_matrix(
                (np.ones(npk), (np.arange(npk), primal_index[gfree[local]])), shape=(npk, nP)))

    def check_singularity(self):
        """Check that every local problem is uniquely solvable.

        A subdomain without free DOFs is rejected, as is a floating one
        (without eliminated DOFs) which has no primal DOFs to fix it.
        """
        for k, lm in enumerate(self.local_mappers):
            if lm.free_size == 0:
                raise ValueError('subdomain %d has no free degrees of freedom' % k)
            if lm.boundary_size == 0 and self.primal_selections[k].shape[0] == 0:
                raise ValueError('subdomain %d is floating and has no primal degrees of freedom' % k)

    def local_space(self, k, assembler):
        """Create the space of subdomain `k` in the given :class:`.ExprAssembler`,
        numbered by the local DOF mapper."""
        u = assembler.get_space(self.multibasis[k], dim=self.dim)
        u.set_mapper(self.local_mappers[k], self.local_fixed[k])
        return u

    def assemble(self, forms, **options):
        """Assemble all local systems.

        Args:
            forms: a function `forms(u, G)` which returns the bilinear and the
                linear form for the local space `u` and the geometry map `G`
            **options: options for the :class:`.ExprAssembler` of each patch
        """
        for k in range(self.num_patches):
            A = ExprAssembler(**options)
            G = A.get_map(self.multipatch.patches[k])
            u = self.local_space(k, A)
            A.init_system()
            A.assemble(*forms(u, G))
            self.set_local_system(k, A.full_matrix(), A.rhs())

    def set_local_system(self, k, matrix, rhs):
        """Set the local matrix and right-hand side of subdomain `k`; both
        are indexed by the free DOFs of the local mapper."""
        n = self.local_mappers[k].free_size
        assert matrix.shape == (n, n) and rhs.shape == (n,), \
            'local system of subdomain %d must have size %d' % (k, n)
        self.local_matrices[k] = scipy.sparse.csr_matrix(matrix)
        self.local_rhs[k] = np.asarray(rhs, dtype=float)
        self._factorized = False

    def _factorize(self):
        if self._factorized:
            return
        if any(A is None for A in self.local_matrices):
            raise RuntimeError('not all local systems have been set')
        nP = len(self.primal_dofs)
        self._solvers, self._psi = [], []
        S = np.zeros((nP, nP))
        for k, A in enumerate(self.local_matrices):
            C = self.primal_selections[k]
            n, npk = A.shape[0], C.shape[0]
            if npk:
                K = scipy.sparse.bmat([[A, C.T], [C, None]], format='csc')
                solver = make_solver(K)
                rhs = np.vstack((np.zeros((n, npk)), np.eye(npk)))
                psi = solver.dot(rhs)[:n] @ self.primal_maps[k].toarray()
            else:
                solver = make_solver(A)
                psi = np.zeros((n, nP))
            S += psi.T @ (A @ psi)
            self._solvers.append(solver)
            self._psi.append(psi)
        self._primal_solver = make_solver(S) if nP else None
        self._primal_jump = sum(B @ psi for B, psi in zip(self.jump_matrices, self._psi))
        self._factorized = True

    def _solve_local(self, k, v):
        """Solve the local problem with homogeneous primal constraints."""
        n = len(v)
        npk = self.primal_selections[k].shape[0]
        if npk:
            return self._solvers[k].dot(np.concatenate((v, np.zeros(npk))))[:n]
        return self._solvers[k].dot(v)

    def _solve_primal(self, v):
        if self._primal_solver is None:
            return np.zeros(0)
        return self._primal_solver.dot(v)

    def _primal_rhs(self):
        return sum(psi.T @ f for psi, f in zip(self._psi, self.local_rhs))

    def schur_complement(self):
        """The operator `F` of the multiplier system as a :class:`LinearOperator`."""
        self._factorize()
        m = self.num_multipliers

        def apply(lam):
            lam = np.ravel(lam)
            out = np.zeros(m)
            for k, B in enumerate(self.jump_matrices):
                out += B @ self._solve_local(k, B.T @ lam)
            if len(self.primal_dofs):
                out += self._primal_jump @ self._solve_primal(self._primal_jump.T @ lam)
            return out
        return scipy.sparse.linalg.LinearOperator((m, m), matvec=apply, dtype=float)

    def rhs_for_schur_complement(self):
        """The right-hand side `d` of the multiplier system."""
        self._factorize()
        d = -self.jump_rhs
        for k, B in enumerate(self.jump_matrices):
            d += B @ self._solve_local(k, self.local_rhs[k])
        if len(self.primal_dofs):
            d += self._primal_jump @ self._solve_primal(self._primal_rhs())
        return d

    def construct_solution(self, multipliers):
        """The local solutions (vectors of local free DOFs) for given multipliers."""
        self._factorize()
        lam = np.ravel(multipliers)
        if len(self.primal_dofs):
            u_primal = self._solve_primal(self._primal_rhs() - self._primal_jump.T @ lam)
        else:
            u_primal = np.zeros(0)
        return [self._solve_local(k, self.local_rhs[k] - B.T @ lam) + self._psi[k] @ u_primal
                for k, B in enumerate(self.jump_matrices)]

    def assemble_global(self, parts):
        """Combine local solutions into a vector of the global free DOFs;
        values of shared DOFs are averaged and constrained copies are
        dropped."""
        nfree = self.space.mapper.free_size
        u = np.zeros(nfree)
        for gfree, part in zip(self.global_indices, parts):
            free = gfree < nfree
            np.add.at(u, gfree[free], np.asarray(part)[free])
        return u / np.maximum(self.multiplicity, 1)

    def saddle_point_problem(self):
        """The coupled system `[[A, Bᵀ], [B, 0]]` over all local free DOFs and
        its right-hand side.

        `A` is the block diagonal matrix of the local matrices. The rows of
        `B` are the jumps of the non-primal DOFs followed by the jumps
        between the local copies of each primal DOF. The right-hand side is
        the concatenation of the local right-hand sides and of the
        right-hand sides of the jumps, which are nonzero only for
        constrained DOFs depending on eliminated ones.

        Returns:
            a pair `(matrix, rhs)`
        """
        if any(A is None for A in self.local_matrices):
            raise RuntimeError('not all local systems have been set')
        A = scipy.sparse.block_diag(self.local_matrices, format='csr')
        B = scipy.sparse.hstack(self.jump_matrices, format='csr')
        # E[p, j] == 1 iff the local dof j is a copy of the primal dof p
        E = scipy.sparse.vstack([C.T @ R for C, R in zip(self.primal_selections, self.primal_maps)]).T.tocsr()
        E.sort_indices()
        pairs = [(a, b) for p in range(E.shape[0])
                 for a, b in zip(E[p].indices[:-1], E[p].indices[1:])]
        D = scipy.sparse.lil_matrix((len(pairs), A.shape[0]))
        for r, (a, b) in enumerate(pairs):
            D[r, a] = 1.0
            D[r, b] = -1.0
        BD = scipy.sparse.vstack([B, D.tocsr()], format='csr')
        rhs = np.concatenate(self.local_rhs + [self.jump_rhs, np.zeros(D.shape[0])])
        return scipy.sparse.bmat([[A, BD.T], [BD, None]], format='csr'), rhs

    def solve(self, rtol=1e-10, maxiter=None):
        """Solve the multiplier system by CG and return the global free DOF vector.

        Returns:
            a pair `(u, num_iter)`
        """
        F = self.schur_complement()
        d = self.rhs_for_schur_complement()
        if maxiter is None:
            maxiter = max(10, 2 * self.num_multipliers)
        lam, num_iter, _ = pcg(F, d, rtol=rtol, maxiter=maxiter, raise_error=True)
        return self.assemble_global(self.construct_solution(lam)), num_iter
