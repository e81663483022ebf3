"""Problem definition: dynamics contract, horizon and the OCP container."""

from dataclasses import dataclass
from enum import Enum, auto
from functools import cached_property
from typing import Callable, Optional, Protocol, Sequence, Union
import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.core.constraints import Attachment, Constraint, ConstraintKind, Target
from shootsqp.core.errors import MalformedProblem
from shootsqp.core.objective import CostFunctional
from shootsqp.utils.differences import split_jacobian

logger = logging.getLogger(__name__)


class DynamicsModel(Protocol):
    """User provides the right-hand side and its first derivatives."""

    @property
    def state_dim(self) -> int:
        """State dimension n."""
        ...

    @property
    def control_dim(self) -> int:
        """Control dimension m."""
        ...

    @property
    def parameter_dim(self) -> int:
        """Parameter dimension n_p."""
        ...

    def evaluate(
        self, t: float, x: NDArray, u: NDArray, p: NDArray
    ) -> tuple[NDArray, NDArray, NDArray]:
        """
        RHS and Jacobians: (ẋ, ∂ẋ/∂x, ∂ẋ/∂u) with shapes (n,), (n, n), (n, m).

        Raises:
            NumericFault: if the right-hand side is undefined at the query point
        """
        ...

    # Only needed when the parameters are decision variables
    # def parameter_jacobian(self, t, x, u, p) -> NDArray:  # (n, n_p)


class FunctionDynamics:
    """
    Adapts plain callables to the DynamicsModel contract.

    Missing Jacobians are filled in with central differences.
    """

    def __init__(
        self,
        rhs: Callable[[float, NDArray, NDArray, NDArray], NDArray],
        state_dim: int,
        control_dim: int,
        parameter_dim: int = 0,
        jacobian: Optional[Callable] = None,
        parameter_jacobian: Optional[Callable] = None,
        eps: float = 1e-6,
    ):
        """
        Args:
            rhs: ẋ = rhs(t, x, u, p)
            state_dim: State dimension n
            control_dim: Control dimension m
            parameter_dim: Parameter dimension n_p
            jacobian: Optional (t, x, u, p) -> (∂ẋ/∂x, ∂ẋ/∂u)
            parameter_jacobian: Optional (t, x, u, p) -> ∂ẋ/∂p
            eps: Finite difference perturbation
        """
        self.rhs = rhs
        self.state_dim = state_dim
        self.control_dim = control_dim
        self.parameter_dim = parameter_dim
        self._jacobian = jacobian
        self._parameter_jacobian = parameter_jacobian
        self.eps = eps

    def evaluate(self, t, x, u, p):
        f = np.asarray(self.rhs(t, x, u, p), dtype=float)
        if self._jacobian is not None:
            fx, fu = self._jacobian(t, x, u, p)
        else:
            fx, fu, _ = split_jacobian(
                lambda x_, u_, p_: self.rhs(t, x_, u_, p_), x, u, p, self.eps
            )
        return f, np.asarray(fx, dtype=float), np.asarray(fu, dtype=float)

    def parameter_jacobian(self, t, x, u, p):
        if self._parameter_jacobian is not None:
            return np.asarray(self._parameter_jacobian(t, x, u, p), dtype=float)
        _, _, fp = split_jacobian(
            lambda x_, u_, p_: self.rhs(t, x_, u_, p_), x, u, p, self.eps
        )
        return fp


@dataclass(frozen=True)
class Horizon:
    """Time horizon split into shooting intervals."""

    start: float
    end: float
    intervals: int

    def __post_init__(self) -> None:
        if isinstance(self.intervals, bool) or not isinstance(self.intervals, (int, np.integer)):
            raise MalformedProblem(
                f"number of shooting intervals must be an integer, got {self.intervals!r}"
            )
        if self.intervals < 1:
            raise MalformedProblem(
                f"number of shooting intervals must be >= 1, got {self.intervals}"
            )
        if not self.end > self.start:
            raise MalformedProblem(
                f"horizon end ({self.end}) must exceed its start ({self.start})"
            )

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def interval_length(self) -> float:
        return self.duration / self.intervals

    @cached_property
    def grid(self) -> NDArray:
        """Shooting node times (N+1,)."""
        return np.linspace(self.start, self.end, self.intervals + 1)


class ControlParametrization(Enum):
    """Control representation inside a shooting interval."""
    PIECEWISE_CONSTANT = auto()  # one control per interval
    PIECEWISE_LINEAR = auto()    # controls on nodes, linear in between


class OptimalControlProblem:
    """
    Continuous-time OCP: horizon, dynamics, cost and an ordered constraint set.

    Component pins are checked as they are added so that contradictory
    fixed values at the same attachment point never reach the solver.
    """

    def __init__(
        self,
        horizon: Horizon,
        dynamics: DynamicsModel,
        cost: CostFunctional,
        parametrization: ControlParametrization = ControlParametrization.PIECEWISE_CONSTANT,
        parameters: Optional[Sequence[float]] = None,
        free_parameters: bool = False,
    ):
        self.horizon = horizon
        self.dynamics = dynamics
        self.cost = cost
        self.parametrization = parametrization
        self.constraints: list[Constraint] = []

        n_p = int(getattr(dynamics, "parameter_dim", 0))
        if parameters is None:
            parameters = np.zeros(n_p)
        self.parameters = np.asarray(parameters, dtype=float).reshape(-1)
        if self.parameters.size != n_p:
            raise MalformedProblem(
                f"dynamics expects {n_p} parameters, got {self.parameters.size}"
            )
        self.free_parameters = bool(free_parameters) and n_p > 0
        if self.free_parameters and not hasattr(dynamics, "parameter_jacobian"):
            raise MalformedProblem(
                "free parameters need a dynamics model with parameter_jacobian()"
            )

        if self.state_dim < 1:
            raise MalformedProblem("dynamics must have at least one state")
        if self.control_dim < 0:
            raise MalformedProblem("control dimension must be non-negative")

        self._pins: dict[tuple[Target, int, Attachment], float] = {}

    @property
    def state_dim(self) -> int:
        return int(self.dynamics.state_dim)

    @property
    def control_dim(self) -> int:
        return int(self.dynamics.control_dim)

    @property
    def parameter_dim(self) -> int:
        return self.parameters.size

    @property
    def control_nodes(self) -> int:
        """Number of control vectors in the transcription."""
        if self.parametrization == ControlParametrization.PIECEWISE_LINEAR:
            return self.horizon.intervals + 1
        return self.horizon.intervals

    def subject_to(self, constraint: Constraint) -> Constraint:
        """Validate and append a constraint to the constraint set."""
        if constraint.is_component:
            self._check_component(constraint)
        elif constraint.target is None and constraint.function is None:
            raise MalformedProblem(f"constraint {constraint} has no residual")

        self.constraints.append(constraint)
        logger.debug(f"Added {constraint}")
        return constraint

    def fix_state(self, attachment: Attachment, index: int, value: float) -> Constraint:
        """Pin state component `index` at START or END (or every node for PATH)."""
        return self.subject_to(Constraint.fixed(Target.STATE, index, value, attachment))

    def fix_control(self, attachment: Attachment, index: int, value: float) -> Constraint:
        """Pin control component `index`."""
        return self.subject_to(Constraint.fixed(Target.CONTROL, index, value, attachment))

    def bound_state(
        self,
        index: int,
        lower: float = -np.inf,
        upper: float = np.inf,
        attachment: Attachment = Attachment.PATH,
    ) -> Constraint:
        """Box bound on a state component."""
        return self.subject_to(
            Constraint.bounded(Target.STATE, index, lower, upper, attachment)
        )

    def bound_control(
        self,
        index: int,
        lower: float = -np.inf,
        upper: float = np.inf,
        attachment: Attachment = Attachment.PATH,
    ) -> Constraint:
        """Box bound on a control component."""
        return self.subject_to(
            Constraint.bounded(Target.CONTROL, index, lower, upper, attachment)
        )

    def bound_parameter(
        self, index: int, lower: float = -np.inf, upper: float = np.inf
    ) -> Constraint:
        """Box bound on a free parameter."""
        return self.subject_to(
            Constraint.bounded(Target.PARAMETER, index, lower, upper, Attachment.PATH)
        )

    def add_constraint(
        self,
        function: Callable,
        lower: Union[float, Sequence[float]],
        upper: Union[float, Sequence[float]],
        attachment: Attachment = Attachment.PATH,
        jacobian: Optional[Callable] = None,
        name: str = "",
    ) -> Constraint:
        """General constraint lower <= h(t, x, u, p) <= upper."""
        return self.subject_to(
            Constraint.general(function, lower, upper, attachment, jacobian, name)
        )

    def _check_component(self, constraint: Constraint) -> None:
        dims = {
            Target.STATE: self.state_dim,
            Target.CONTROL: self.control_dim,
            Target.PARAMETER: self.parameter_dim,
        }
        dim = dims[constraint.target]
        if not 0 <= constraint.index < dim:
            raise MalformedProblem(
                f"{constraint.target.name.lower()} index {constraint.index} "
                f"out of range for dimension {dim}"
            )
        if constraint.target == Target.PARAMETER and not self.free_parameters:
            raise MalformedProblem("parameter bounds require free_parameters=True")

        if constraint.kind != ConstraintKind.EQUALITY:
            return

        key = (constraint.target, constraint.index, constraint.attachment)
        value = float(constraint.lower[0])
        previous = self._pins.get(key)
        if previous is not None and not np.isclose(previous, value):
            raise MalformedProblem(
                f"{constraint.target.name.lower()}[{constraint.index}] pinned to both "
                f"{previous} and {value} at {constraint.attachment.name}"
            )
        self._pins[key] = value
