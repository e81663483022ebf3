"""Trajectory extraction from a converged (or last) SQP iterate."""

from dataclasses import dataclass, field
from os import PathLike
from typing import Union
import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.discretization.shooting import ShootingDiscretization
from shootsqp.integrators.base import Integrator
from shootsqp.integrators.explicit import ExplicitIntegrator

logger = logging.getLogger(__name__)


@dataclass
class Solution:
    """
    Sampled trajectory of one iterate.

    States are sampled at the N + 1 shooting nodes, controls at the control
    nodes (N for piecewise-constant, N + 1 for piecewise-linear controls).
    """

    times: NDArray            # (N + 1,)
    states: NDArray           # (N + 1, n)
    control_times: NDArray    # (nodes,)
    controls: NDArray         # (nodes, m)
    parameters: NDArray       # (n_p,)
    w: NDArray = field(repr=False)
    discretization: ShootingDiscretization = field(repr=False)
    integrator: Integrator = field(repr=False)

    @property
    def final_state(self) -> NDArray:
        return self.states[-1]

    def control_at(self, t: float) -> NDArray:
        """Control in effect at time t under the problem's parametrization."""
        grid = self.discretization.grid
        if self.discretization.linear_controls:
            return np.array([
                np.interp(t, grid, self.controls[:, k])
                for k in range(self.controls.shape[1])
            ])
        i = int(np.searchsorted(grid, t, side="right")) - 1
        return self.controls[min(max(i, 0), self.controls.shape[0] - 1)]

    def refine(self, substeps: int) -> tuple[NDArray, NDArray]:
        """
        Re-integrate every stage from its node state on a finer grid.

        Args:
            substeps: Micro-steps per shooting interval

        Returns:
            (times, states) with N·substeps + 1 samples
        """
        disc = self.discretization
        fine = ExplicitIntegrator(self.integrator.tableau, steps=substeps)
        times, states = [disc.grid[:1]], [self.states[:1]]
        for stage in disc.stages:
            x0, u0, u1, p = stage.inputs(self.w, disc.layout, disc.fixed_parameters)
            block = fine.integrate(
                disc.ocp.dynamics, stage.t0, stage.t1, x0, u0, p,
                u1=u1, record=True, stage=stage.index,
            )
            times.append(block.times[1:])
            states.append(block.states[1:])
        return np.concatenate(times), np.vstack(states)

    def defects(self) -> NDArray:
        """Φ_i(x_i, u_i) - x_{i+1} for every stage, shape (N, n)."""
        disc = self.discretization
        rows = []
        for stage in disc.stages:
            x0, u0, u1, p = stage.inputs(self.w, disc.layout, disc.fixed_parameters)
            block = self.integrator.integrate(
                disc.ocp.dynamics, stage.t0, stage.t1, x0, u0, p,
                u1=u1, stage=stage.index,
            )
            rows.append(block.end_state - self.states[stage.index + 1])
        return np.array(rows)

    def max_defect(self) -> float:
        """Largest matching defect when the samples are re-integrated."""
        defects = self.defects()
        return float(np.max(np.abs(defects))) if defects.size else 0.0

    def is_dynamically_feasible(self, tol: float = 1e-6) -> bool:
        return self.max_defect() <= tol

    def savetxt(
        self,
        states_path: Union[str, PathLike],
        controls_path: Union[str, PathLike],
    ) -> None:
        """
        Write the state and control samples as text tables.

        Each row holds the sample time followed by the vector.
        """
        np.savetxt(states_path, np.column_stack([self.times, self.states]))
        np.savetxt(controls_path, np.column_stack([self.control_times, self.controls]))
        logger.info(f"Wrote {states_path} and {controls_path}")


def extract_solution(
    discretization: ShootingDiscretization,
    integrator: Integrator,
    w: NDArray,
) -> Solution:
    """Read the node samples out of an iterate without modifying it."""
    layout = discretization.layout
    states, controls, _ = layout.split(w)
    grid = discretization.grid
    return Solution(
        times=grid.copy(),
        states=states,
        control_times=grid[:layout.control_nodes].copy(),
        controls=controls,
        parameters=discretization.parameters(w).copy(),
        w=w.copy(),
        discretization=discretization,
        integrator=integrator,
    )
