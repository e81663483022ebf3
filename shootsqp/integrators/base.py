"""Base integrator interface and the per-stage sensitivity block."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
from numpy.typing import NDArray

if TYPE_CHECKING:
    from shootsqp.core.objective import CostFunctional
    from shootsqp.core.problem import DynamicsModel


@dataclass
class SensitivityBlock:
    """
    Integration result for one shooting interval.

    Local stage variables are ordered w = [x_i, u_i, (u_{i+1}), (p)].
    """

    stage: int
    end_state: NDArray                  # (n,)
    jacobian: NDArray                   # (n, n_w) ∂x_end/∂w
    control_columns: slice              # columns of the control entries in w
    cost: float = 0.0                   # ∫ L dt over the interval
    cost_gradient: Optional[NDArray] = None   # (n_w,)
    cost_hessian: Optional[NDArray] = None    # (n_w, n_w) Gauss-Newton
    times: Optional[NDArray] = None     # micro-step times, if recorded
    states: Optional[NDArray] = None    # micro-step states, if recorded

    @property
    def state_sensitivity(self) -> NDArray:
        """∂x_end/∂x_i, shape (n, n)."""
        n = self.jacobian.shape[0]
        return self.jacobian[:, :n]

    @property
    def control_sensitivity(self) -> NDArray:
        """∂x_end/∂u, shape (n, m) or (n, 2m) for piecewise-linear controls."""
        return self.jacobian[:, self.control_columns]


class Integrator(ABC):
    """Advances the dynamics over one shooting interval."""

    @abstractmethod
    def integrate(
        self,
        dynamics: "DynamicsModel",
        t0: float,
        t1: float,
        x0: NDArray,
        u0: NDArray,
        p: NDArray,
        u1: Optional[NDArray] = None,
        free_parameters: bool = False,
        cost: Optional["CostFunctional"] = None,
        gauss_newton: bool = False,
        record: bool = False,
        stage: int = 0,
    ) -> SensitivityBlock:
        """
        Integrate state and first-order sensitivities over [t0, t1].

        Args:
            dynamics: Dynamics model
            t0: Interval start
            t1: Interval end
            x0: State at t0 (n,)
            u0: Control at t0 (m,)
            p: Parameters (n_p,)
            u1: Control at t1 for piecewise-linear controls, None for constant
            free_parameters: Whether p is a decision variable
            cost: Cost functional whose Lagrange terms are integrated alongside
            gauss_newton: Also accumulate the Gauss-Newton cost Hessian
            record: Keep the micro-step states
            stage: Stage index used in error messages

        Returns:
            Sensitivity block

        Raises:
            NumericFault: if the dynamics are undefined or the integration
                produces non-finite values
        """
        ...
