"""Dual active-set QP solver (Goldfarb-Idnani) on sparse KKT systems."""

from typing import Optional
import logging

import numpy as np
import scipy.sparse
from numpy.typing import NDArray

from shootsqp.algebra.protocols import LinearAlgebraBackend
from shootsqp.algebra.sparse import SparseBackend
from shootsqp.core.errors import InfeasibleStep
from shootsqp.optimization.subproblem import Multipliers, QPSolution, QuadraticProgram

logger = logging.getLogger(__name__)


def _csr(M, shape: tuple[int, int]) -> scipy.sparse.csr_matrix:
    """Convert a block matrix, sparse matrix or array to CSR."""
    if M is None:
        return scipy.sparse.csr_matrix(shape)
    if scipy.sparse.issparse(M) or hasattr(M, "tocsr"):
        return M.tocsr()
    return scipy.sparse.csr_matrix(np.asarray(M, dtype=float).reshape(shape))


def _stack(blocks: list, shape: tuple[int, int], axis: int) -> scipy.sparse.csr_matrix:
    """Stack sparse blocks along axis 0 or 1, skipping empty ones."""
    kept = [block for block in blocks if block.shape[axis]]
    if not kept or 0 in shape:
        return scipy.sparse.csr_matrix(shape)
    stack = scipy.sparse.vstack if axis == 0 else scipy.sparse.hstack
    return stack(kept, format="csr")


class _Rows:
    """
    QP constraints in the form used by the dual method.

    Equalities:    E d  = e     (A_eq rows, pinned variables, A_in rows with lbA == ubA)
    Inequalities:  C d >= β     (one row per finite side of every other bound)
    """

    def __init__(self, qp: QuadraticProgram):
        n = qp.num_variables
        m_eq, m_in = qp.num_equalities, qp.num_inequalities
        eye = scipy.sparse.identity(n, format="csr")
        A_eq = _csr(qp.A_eq, (m_eq, n))
        A_in = _csr(qp.A_in, (m_in, n))

        self.fixed = np.flatnonzero(np.isfinite(qp.lb) & (qp.lb == qp.ub))
        self.tight = np.flatnonzero(np.isfinite(qp.lbA) & (qp.lbA == qp.ubA))
        free_bound = qp.lb != qp.ub
        loose = np.setdiff1d(np.arange(m_in), self.tight)

        self.lower = np.flatnonzero(np.isfinite(qp.lb) & free_bound)
        self.upper = np.flatnonzero(np.isfinite(qp.ub) & free_bound)
        self.row_lower = loose[np.isfinite(qp.lbA[loose])]
        self.row_upper = loose[np.isfinite(qp.ubA[loose])]

        parts = [A_eq, eye[self.fixed], A_in[self.tight]]
        self.E = _stack(parts, (sum(p.shape[0] for p in parts), n), axis=0)
        self.e = np.concatenate([qp.b_eq, qp.lb[self.fixed], qp.lbA[self.tight]])

        parts = [eye[self.lower], -eye[self.upper], A_in[self.row_lower], -A_in[self.row_upper]]
        self.C = _stack(parts, (sum(p.shape[0] for p in parts), n), axis=0)
        self.beta = np.concatenate([
            qp.lb[self.lower],
            -qp.ub[self.upper],
            qp.lbA[self.row_lower],
            -qp.ubA[self.row_upper],
        ])
        self.C_norm2 = np.asarray(self.C.multiply(self.C).sum(axis=1)).reshape(-1)

        self.n = n
        self.m_eq = m_eq
        self.m_in = m_in

    @property
    def num_equalities(self) -> int:
        return self.E.shape[0]

    @property
    def num_inequalities(self) -> int:
        return self.C.shape[0]

    def row(self, j: int) -> NDArray:
        return self.C[j].toarray().reshape(-1)

    def multipliers(self, lam_E: NDArray, lam_C: NDArray) -> Multipliers:
        """Map the duals of E and C back onto equality, inequality and bound rows."""
        result = Multipliers.zeros(self.m_eq, self.m_in, self.n)
        result.equality[:] = lam_E[:self.m_eq]
        offset = self.m_eq
        result.bounds[self.fixed] += lam_E[offset:offset + self.fixed.size]
        offset += self.fixed.size
        result.inequality[self.tight] += lam_E[offset:]

        offset = 0
        for index, target, sign in (
            (self.lower, result.bounds, 1.0),
            (self.upper, result.bounds, -1.0),
            (self.row_lower, result.inequality, 1.0),
            (self.row_upper, result.inequality, -1.0),
        ):
            target[index] += sign * lam_C[offset:offset + index.size]
            offset += index.size
        return result



class _KKTSystem:
    """
    Factored working-set KKT matrix.

    Solves are refined against the unregularised matrix, so δ only shifts
    the factorization and not the returned step.
    """

    def __init__(self, factor, K, n: int):
        self.factor = factor
        self.K = K
        self.n = n

    def solve(self, top: NDArray, bottom: NDArray, refinements: int = 3) -> tuple[NDArray, NDArray]:
        """Returns (primal, λ = -μ)."""
        rhs = np.concatenate([top, bottom])
        solution = self.factor.solve(rhs)
        residual = rhs - self.K @ solution
        error = float(np.max(np.abs(residual)))
        floor = 1e-15 * (1.0 + float(np.max(np.abs(rhs))))
        for _ in range(refinements):
            if not np.isfinite(error) or error <= floor:
                break
            refined = solution + self.factor.solve(residual)
            refined_residual = rhs - self.K @ refined
            refined_error = float(np.max(np.abs(refined_residual)))
            if not refined_error < error:
                break
            solution, residual, error = refined, refined_residual, refined_error
        if not np.all(np.isfinite(solution)):
            raise InfeasibleStep("KKT solve produced non-finite values")
        return solution[:self.n], -solution[self.n:]


class ActiveSetQPSolver:
    """
    Goldfarb-Idnani dual active-set method.

    Starts from the equality-constrained minimiser (dual feasible) and adds
    the most violated inequality at each outer step, moving along the KKT
    direction and dropping active constraints whose multiplier would turn
    negative. The KKT system of the working set is refactored after every
    change:

        [ H   Nᵀ ] [ d ]   [ -g ]
        [ N  -δI ] [ μ ] = [  e ],    λ = -μ

    with a tiny δ so that dependent but consistent equalities stay solvable.

    The dual objective increases strictly with every added constraint. When
    roundoff stalls it, the feasibility tolerance is relaxed tenfold (up to
    max_tolerance) so that rows re-entering on noise alone stop cycling.
    """

    stall_limit = 3

    def __init__(
        self,
        backend: Optional[LinearAlgebraBackend] = None,
        max_iterations: int = 1000,
        tolerance: float = 1e-9,
        dual_regularization: float = 1e-12,
        max_tolerance: float = 1e-7,
    ):
        self.backend = backend if backend is not None else SparseBackend()
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.dual_regularization = dual_regularization
        self.max_tolerance = max(max_tolerance, tolerance)

    def solve(self, qp: QuadraticProgram, initial_lower: Optional[NDArray] = None) -> QPSolution:
        """
        Solve a strictly convex QP.

        Args:
            qp: Quadratic program
            initial_lower: Variables whose lower bounds start in the working
                set. Bounds whose multiplier comes out negative are released
                before the first iteration.

        Returns:
            Primal step, multipliers and iteration count

        Raises:
            InfeasibleStep: if the constraints are inconsistent or the
                iteration limit is hit
        """
        n = qp.num_variables
        H = _csr(qp.H, (n, n))
        g = np.asarray(qp.g, dtype=float)
        rows = _Rows(qp)
        mE = rows.num_equalities
        C, beta = rows.C, rows.beta
        row_scale = np.sqrt(np.maximum(rows.C_norm2, 1e-300))
        tolerance = self.tolerance

        active: list[int] = []
        if initial_lower is not None:
            # Lower bound rows come first in C, in variable order
            start = np.intersect1d(rows.lower, initial_lower)
            active = [int(j) for j in np.searchsorted(rows.lower, start)]
        lam_C = np.zeros(rows.num_inequalities)
        kkt, d, lam_E = self._equality_point(H, g, rows, active, lam_C)

        objective = float(0.5 * d @ (H @ d) + g @ d)
        stalls = 0
        iterations = 0

        while True:
            row_tol = tolerance * (1.0 + np.abs(beta))
            slack = C @ d - beta
            violated = slack < -row_tol
            violated[active] = False
            candidates = np.flatnonzero(violated)
            if candidates.size == 0:
                break

            # argmin keeps the lowest index on ties
            p = int(candidates[np.argmin(slack[candidates] / row_scale[candidates])])
            c_p = rows.row(p)
            c_scale = float(np.max(np.abs(c_p)))

            while True:
                iterations += 1
                if iterations > self.max_iterations:
                    raise InfeasibleStep(
                        f"QP iteration limit ({self.max_iterations}) reached"
                    )

                z, r = kkt.solve(c_p, np.zeros(mE + len(active)))
                r_E, r_act = r[:mE], r[mE:]

                # Largest dual step keeping the active multipliers non-negative
                t2, blocking = np.inf, None
                for pos, j in enumerate(active):
                    if r_act[pos] < 0.0:
                        ratio = -lam_C[j] / r_act[pos]
                        if ratio < t2:
                            t2, blocking = ratio, pos

                cz = float(c_p @ z)
                if cz <= 0.0 or np.max(np.abs(H @ z)) <= 1e-9 * c_scale:
                    # c_p is spanned by the working set: dual step only
                    if blocking is None:
                        raise InfeasibleStep(
                            f"linearised constraints are inconsistent (row {p})"
                        )
                    lam_E = lam_E + t2 * r_E
                    lam_C[active] += t2 * r_act
                    lam_C[active.pop(blocking)] = 0.0
                    kkt = self._factorize(H, rows, active)
                    continue

                t1 = -float(c_p @ d - beta[p]) / cz
                t = min(t1, t2)
                d = d + t * z
                lam_E = lam_E + t * r_E
                lam_C[active] += t * r_act

                if t1 <= t2:
                    active.append(p)
                    kkt, d, lam_E = self._equality_point(H, g, rows, active, lam_C)
                    break

                lam_C[active.pop(blocking)] = 0.0
                kkt = self._factorize(H, rows, active)

            value = float(0.5 * d @ (H @ d) + g @ d)
            if value <= objective + 1e-14 * (1.0 + abs(objective)):
                stalls += 1
                if stalls >= self.stall_limit and tolerance < self.max_tolerance:
                    tolerance = min(10.0 * tolerance, self.max_tolerance)
                    stalls = 0
                    logger.debug(f"QP stalled, relaxing feasibility tolerance to {tolerance:.1e}")
            else:
                stalls = 0
            objective = max(objective, value)

        residual = rows.E @ d - rows.e
        scale = 1.0 + (np.max(np.abs(rows.e)) if rows.e.size else 0.0)
        if residual.size and np.max(np.abs(residual)) > 1e-6 * scale:
            raise InfeasibleStep(
                f"linearised equalities are inconsistent "
                f"(residual {np.max(np.abs(residual)):.3e})"
            )

        logger.debug(f"QP solved: {iterations} iterations, {len(active)} active inequalities")
        return QPSolution(
            step=d,
            multipliers=rows.multipliers(lam_E, lam_C),
            iterations=iterations,
            objective=float(0.5 * d @ (H @ d) + g @ d),
            active=list(active),
        )

    def solve_elastic(
        self,
        qp: QuadraticProgram,
        penalty: float,
        smoothing: float = 1e-6,
    ) -> QPSolution:
        """
        Solve the l1-elastic relaxation of a QP.

        Every linearised row is relaxed by non-negative slacks:

            A_eq d + v⁺ - v⁻ = b_eq
            lbA <= A_in d + t,   A_in d - t <= ubA

        with cost penalty·(Σv⁺ + Σv⁻ + Σt) + ½ smoothing·(|v⁺|² + |t|²).
        v⁻ = A_eq d + v⁺ - b_eq is eliminated, which turns each equality into
        the inequality A_eq d + v⁺ >= b_eq and adds penalty·A_eqᵀ1 to the
        gradient. With every slack held at zero the multipliers of the slack
        bounds equal their cost coefficients, so the solver starts from that
        working set instead of the far-away unconstrained minimiser.

        Only the simple bounds stay hard, so the relaxation is feasible
        whenever they are.

        Returns:
            Solution in the original variables; linear_violation holds the
            l1 violation of the linearised rows at the step
        """
        n, m_eq, m_in = qp.num_variables, qp.num_equalities, qp.num_inequalities
        k = m_eq + m_in
        size = n + k

        H0 = _csr(qp.H, (n, n))
        H = H0
        if k:
            H = scipy.sparse.block_diag(
                [H0, smoothing * scipy.sparse.identity(k)], format="csr"
            )

        A_eq = _csr(qp.A_eq, (m_eq, n))
        A_in = _csr(qp.A_in, (m_in, n))
        b_eq = np.asarray(qp.b_eq, dtype=float)
        g = np.concatenate([
            np.asarray(qp.g, dtype=float) + penalty * np.asarray(A_eq.sum(axis=0)).reshape(-1),
            np.full(m_eq, 2.0 * penalty),
            np.full(m_in, penalty),
        ])

        eye_eq = scipy.sparse.identity(m_eq, format="csr")
        eye_in = scipy.sparse.identity(m_in, format="csr")
        rows = [
            _stack([A_eq, eye_eq, scipy.sparse.csr_matrix((m_eq, m_in))], (m_eq, size), axis=1),
            _stack([A_in, scipy.sparse.csr_matrix((m_in, m_eq)), eye_in], (m_in, size), axis=1),
            _stack([A_in, scipy.sparse.csr_matrix((m_in, m_eq)), -eye_in], (m_in, size), axis=1),
        ]
        elastic = QuadraticProgram(
            H=H,
            g=g,
            A_eq=scipy.sparse.csr_matrix((0, size)),
            b_eq=np.zeros(0),
            A_in=_stack(rows, (m_eq + 2 * m_in, size), axis=0),
            lbA=np.concatenate([b_eq, qp.lbA, np.full(m_in, -np.inf)]),
            ubA=np.concatenate([np.full(m_eq + m_in, np.inf), qp.ubA]),
            lb=np.concatenate([qp.lb, np.zeros(k)]),
            ub=np.concatenate([qp.ub, np.full(k, np.inf)]),
        )
        solution = self.solve(elastic, initial_lower=np.arange(n, size))

        duals = solution.multipliers
        multipliers = Multipliers(
            equality=duals.inequality[:m_eq] - penalty,
            inequality=duals.inequality[m_eq:m_eq + m_in] + duals.inequality[m_eq + m_in:],
            bounds=duals.bounds[:n].copy(),
        )
        step = solution.step[:n]
        violation = float(np.sum(np.abs(A_eq @ step - b_eq)))
        if m_in:
            Ad = A_in @ step
            excess = np.maximum(np.maximum(qp.lbA - Ad, Ad - qp.ubA), 0.0)
            violation += float(np.sum(excess))
        return QPSolution(
            step=step,
            multipliers=multipliers,
            iterations=solution.iterations,
            objective=float(0.5 * step @ (H0 @ step) + qp.g @ step),
            active=solution.active,
            elastic=True,
            linear_violation=violation,
        )

    def _equality_point(self, H, g: NDArray, rows: _Rows, active: list[int], lam_C: NDArray):
        """
        Minimiser over the working set with every active multiplier non-negative.

        Refactors, solves, and releases the most negative active multiplier
        until none is left below roundoff. Updates active and lam_C in place.
        """
        mE = rows.num_equalities
        while True:
            kkt = self._factorize(H, rows, active)
            d, lam = kkt.solve(-g, np.concatenate([rows.e, rows.beta[active]]))
            lam_E = lam[:mE]
            lam_C[:] = 0.0
            lam_C[active] = lam[mE:]
            if not active:
                return kkt, d, lam_E
            lam_act = lam[mE:]
            worst = int(np.argmin(lam_act))
            if lam_act[worst] >= -self.tolerance * (1.0 + float(np.max(np.abs(lam)))):
                lam_C[active] = np.maximum(lam_act, 0.0)
                return kkt, d, lam_E
            lam_C[active.pop(worst)] = 0.0

    def _factorize(self, H, rows: _Rows, active: list[int]) -> _KKTSystem:
        """Factor the KKT matrix of the current working set."""
        n = rows.n
        N = _stack([rows.E, rows.C[active]], (rows.num_equalities + len(active), n), axis=0)
        k = N.shape[0]
        if k:
            K = scipy.sparse.bmat([[H, N.T], [N, None]], format="csc")
            shifted = K - scipy.sparse.block_diag(
                [scipy.sparse.csc_matrix((n, n)), self.dual_regularization * scipy.sparse.identity(k)],
                format="csc",
            )
        else:
            K = shifted = H.tocsc()
        try:
            factor = self.backend.factorize(shifted)
        except np.linalg.LinAlgError as err:
            raise InfeasibleStep(f"singular KKT system: {err}") from err
        return _KKTSystem(factor, K, n)
