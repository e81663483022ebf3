"""Multiple shooting transcription of the OCP."""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.core.constraints import Attachment, Constraint, ConstraintKind, Target
from shootsqp.core.errors import MalformedProblem
from shootsqp.core.problem import ControlParametrization, OptimalControlProblem

logger = logging.getLogger(__name__)


class VariableLayout:
    """
    Position of every node state, control and parameter in the iterate.

    w = [x_0, u_0, x_1, u_1, ..., x_{N-1}, u_{N-1}, x_N, (u_N), (p)]
    """

    def __init__(
        self,
        intervals: int,
        state_dim: int,
        control_dim: int,
        control_nodes: int,
        parameter_dim: int = 0,
    ):
        self.N = intervals
        self.n = state_dim
        self.m = control_dim
        self.control_nodes = control_nodes
        self.n_p = parameter_dim

        x_offsets, u_offsets = [], []
        offset = 0
        for i in range(intervals + 1):
            x_offsets.append(offset)
            offset += state_dim
            if i < control_nodes:
                u_offsets.append(offset)
                offset += control_dim
        self._x_offsets = np.array(x_offsets)
        self._u_offsets = np.array(u_offsets)
        self._p_offset = offset
        self.size = offset + parameter_dim

    def __repr__(self) -> str:
        return (
            f"<VariableLayout N={self.N}, n={self.n}, m={self.m}, "
            f"control_nodes={self.control_nodes}, n_p={self.n_p}, size={self.size}>"
        )

    def x_index(self, node: int) -> NDArray:
        """Indices of x_node in w."""
        start = self._x_offsets[node]
        return np.arange(start, start + self.n)

    def u_index(self, node: int) -> NDArray:
        """Indices of u_node in w."""
        start = self._u_offsets[node]
        return np.arange(start, start + self.m)

    @property
    def p_index(self) -> NDArray:
        """Indices of the free parameters in w (empty when fixed)."""
        return np.arange(self._p_offset, self._p_offset + self.n_p)

    def node_control(self, node: int) -> int:
        """Control node in effect at shooting node `node`."""
        return min(node, self.control_nodes - 1)

    def stage_columns(self, stage: int) -> NDArray:
        """Indices of the stage local variables [x_i, u_i, (u_{i+1}), (p)]."""
        parts = [self.x_index(stage), self.u_index(stage)]
        if self.control_nodes == self.N + 1:
            parts.append(self.u_index(stage + 1))
        parts.append(self.p_index)
        return np.concatenate(parts)

    def split(self, w: NDArray) -> tuple[NDArray, NDArray, NDArray]:
        """Split w into node states (N+1, n), controls (nodes, m) and parameters."""
        states = np.array([w[self.x_index(i)] for i in range(self.N + 1)])
        controls = np.array(
            [w[self.u_index(j)] for j in range(self.control_nodes)]
        ).reshape(self.control_nodes, self.m)
        return states, controls, w[self.p_index]

    def join(self, states: NDArray, controls: NDArray, parameters: NDArray) -> NDArray:
        """Inverse of split."""
        w = np.zeros(self.size)
        for i in range(self.N + 1):
            w[self.x_index(i)] = states[i]
        for j in range(self.control_nodes):
            w[self.u_index(j)] = controls[j]
        w[self.p_index] = parameters
        return w


@dataclass
class Stage:
    """One shooting interval [t0, t1) and the iterate entries it owns."""

    index: int
    t0: float
    t1: float
    columns: NDArray  # stage local variables in w
    linear_controls: bool

    def inputs(
        self, w: NDArray, layout: VariableLayout, fixed_parameters: NDArray
    ) -> tuple[NDArray, NDArray, Optional[NDArray], NDArray]:
        """Start state, control(s) and parameters of this stage at iterate w."""
        x0 = w[layout.x_index(self.index)]
        u0 = w[layout.u_index(self.index)]
        u1 = w[layout.u_index(self.index + 1)] if self.linear_controls else None
        p = w[layout.p_index] if layout.n_p else fixed_parameters
        return x0, u0, u1, p


@dataclass
class NodeConstraint:
    """A general constraint instantiated at one shooting node."""

    constraint: Constraint
    node: int

    @property
    def size(self) -> int:
        return self.constraint.size


class ShootingDiscretization:
    """
    Turns an OptimalControlProblem into N stages, matching rows and bounds.

    Matching rows are Φ_i(x_i, u_i) - x_{i+1} = 0 for i = 0, ..., N-1.
    Component constraints become simple bounds on w; general constraints are
    instantiated at their attachment nodes and linearized by the assembler.
    """

    def __init__(self, ocp: OptimalControlProblem):
        self.ocp = ocp
        horizon = ocp.horizon
        self.linear_controls = (
            ocp.parametrization == ControlParametrization.PIECEWISE_LINEAR
        )
        self.layout = VariableLayout(
            intervals=horizon.intervals,
            state_dim=ocp.state_dim,
            control_dim=ocp.control_dim,
            control_nodes=ocp.control_nodes,
            parameter_dim=ocp.parameter_dim if ocp.free_parameters else 0,
        )
        grid = horizon.grid
        self.grid = grid
        self.stages = [
            Stage(
                index=i,
                t0=float(grid[i]),
                t1=float(grid[i + 1]),
                columns=self.layout.stage_columns(i),
                linear_controls=self.linear_controls,
            )
            for i in range(horizon.intervals)
        ]
        self.fixed_parameters = ocp.parameters.copy()

        self.lower, self.upper = self._merge_bounds(ocp.constraints)
        self.equalities: list[NodeConstraint] = []
        self.inequalities: list[NodeConstraint] = []
        for constraint in ocp.constraints:
            if constraint.is_component:
                continue
            for node in self._nodes(constraint.attachment):
                item = NodeConstraint(constraint, node)
                if constraint.kind == ConstraintKind.EQUALITY:
                    self.equalities.append(item)
                else:
                    self.inequalities.append(item)

        logger.debug(
            f"Discretized {self.layout}: {self.num_matching} matching rows, "
            f"{self.num_equalities} general equalities, "
            f"{self.num_inequalities} general inequalities"
        )

    @property
    def N(self) -> int:
        return self.layout.N

    @property
    def num_variables(self) -> int:
        return self.layout.size

    @property
    def num_matching(self) -> int:
        return self.layout.N * self.layout.n

    @property
    def num_equalities(self) -> int:
        return int(sum(item.size for item in self.equalities))

    @property
    def num_inequalities(self) -> int:
        return int(sum(item.size for item in self.inequalities))

    def parameters(self, w: NDArray) -> NDArray:
        """Parameter vector in effect at iterate w."""
        if self.layout.n_p:
            return w[self.layout.p_index]
        return self.fixed_parameters

    def node_point(self, w: NDArray, node: int) -> tuple[float, NDArray, NDArray, NDArray]:
        """(t, x, u, p) at a shooting node."""
        layout = self.layout
        return (
            float(self.grid[node]),
            w[layout.x_index(node)],
            w[layout.u_index(layout.node_control(node))],
            self.parameters(w),
        )

    def node_columns(self, node: int) -> tuple[NDArray, NDArray, NDArray]:
        """Columns of (x, u, p) at a shooting node."""
        layout = self.layout
        return (
            layout.x_index(node),
            layout.u_index(layout.node_control(node)),
            layout.p_index,
        )

    def project(self, w: NDArray) -> NDArray:
        """Clip w onto the simple bounds."""
        return np.clip(w, self.lower, self.upper)

    def initial_guess(
        self,
        method: str = "zeros",
        states: Optional[NDArray] = None,
        controls: Optional[NDArray] = None,
        parameters: Optional[NDArray] = None,
    ) -> NDArray:
        """
        Build a starting iterate.

        Args:
            method: "zeros" or "interpolate" (linear between START/END pins)
            states: Optional user guess for the node states (N+1, n)
            controls: Optional user guess for the controls (nodes, m)
            parameters: Optional user guess for the free parameters

        Returns:
            Iterate projected onto the simple bounds

        Raises:
            MalformedProblem: if a user guess has the wrong shape
        """
        layout = self.layout
        base = np.zeros(layout.size)
        if method == "interpolate":
            base = self._interpolated()
        elif method != "zeros":
            raise ValueError(f"unknown initialization '{method}'")

        guess_x, guess_u, guess_p = layout.split(base)
        if layout.n_p:
            guess_p = self.fixed_parameters.copy()

        if states is not None:
            guess_x = self._checked(states, guess_x.shape, "state guess")
        if controls is not None:
            guess_u = self._checked(controls, guess_u.shape, "control guess")
        if parameters is not None and layout.n_p:
            guess_p = self._checked(parameters, guess_p.shape, "parameter guess")

        return self.project(layout.join(guess_x, guess_u, guess_p))

    def _interpolated(self) -> NDArray:
        """Linear interpolation between the START and END pins of every component."""
        layout = self.layout
        states = np.zeros((layout.N + 1, layout.n))
        controls = np.zeros((layout.control_nodes, layout.m))

        def pinned(index: NDArray) -> NDArray:
            fixed = self.lower[index] == self.upper[index]
            return np.where(fixed, self.lower[index], np.nan)

        def fill(first: NDArray, last: NDArray, count: int) -> NDArray:
            first = np.where(np.isnan(first), last, first)
            last = np.where(np.isnan(last), first, last)
            first = np.nan_to_num(first)
            last = np.nan_to_num(last)
            theta = np.linspace(0.0, 1.0, count)[:, None]
            return (1.0 - theta) * first + theta * last

        states[:] = fill(
            pinned(layout.x_index(0)), pinned(layout.x_index(layout.N)), layout.N + 1
        )
        if layout.m:
            controls[:] = fill(
                pinned(layout.u_index(0)),
                pinned(layout.u_index(layout.control_nodes - 1)),
                layout.control_nodes,
            )
        return layout.join(states, controls, np.zeros(layout.n_p))

    @staticmethod
    def _checked(value, shape, what: str) -> NDArray:
        value = np.asarray(value, dtype=float)
        if value.shape != shape:
            raise MalformedProblem(f"{what} has shape {value.shape}, expected {shape}")
        return value

    def _nodes(self, attachment: Attachment) -> list[int]:
        if attachment == Attachment.START:
            return [0]
        if attachment == Attachment.END:
            return [self.N]
        return list(range(self.N + 1))

    def _component_indices(self, constraint: Constraint) -> list[int]:
        layout = self.layout
        if constraint.target == Target.PARAMETER:
            return [int(layout.p_index[constraint.index])]
        if constraint.target == Target.STATE:
            nodes = self._nodes(constraint.attachment)
            return [int(layout.x_index(i)[constraint.index]) for i in nodes]

        last = layout.control_nodes - 1
        if constraint.attachment == Attachment.START:
            nodes = [0]
        elif constraint.attachment == Attachment.END:
            nodes = [last]
        else:
            nodes = list(range(last + 1))
        return [int(layout.u_index(j)[constraint.index]) for j in nodes]

    def _merge_bounds(self, constraints: list[Constraint]) -> tuple[NDArray, NDArray]:
        """
        Intersect all component constraints into per-variable bounds.

        Raises:
            MalformedProblem: if two constraints leave a variable without any
                admissible value
        """
        lower = np.full(self.layout.size, -np.inf)
        upper = np.full(self.layout.size, np.inf)
        origin: dict[int, list[Constraint]] = {}

        for constraint in constraints:
            if not constraint.is_component:
                continue
            lo, hi = float(constraint.lower[0]), float(constraint.upper[0])
            for k in self._component_indices(constraint):
                lower[k] = max(lower[k], lo)
                upper[k] = min(upper[k], hi)
                origin.setdefault(k, []).append(constraint)
                if lower[k] > upper[k] + 1e-12 * max(1.0, abs(lower[k])):
                    raise MalformedProblem(
                        f"contradictory constraints on variable {k}: "
                        f"{origin[k]} leave [{lower[k]}, {upper[k]}]"
                    )
                # Snap nearly coincident bounds onto an exact pin
                if lower[k] > upper[k]:
                    upper[k] = lower[k]

        return lower, upper
