"""Motion primitive for a ship: steer from the origin to (50, 30) in 20 s.

Ship model:
    ẋ1 = w cos x3 - L w x4 sin x3
    ẋ2 = w sin x3 + L w x4 cos x3
    ẋ3 = x4,  ẋ4 = (-x4 + K u) / τ,  ẇ = a

Objective:
    min ∫ 10 x4² + a² dt

The cost is least squares, so the default Hessian setting solves it with
Gauss-Newton. The optimal states and controls are written to primitive_states.txt and
primitive_controls.txt (time column first).
"""

import logging

import numpy as np

from shootsqp import SolverConfig, SQPSolver
from shootsqp.models import primitive_problem


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    ocp = primitive_problem(goal=(50.0, 30.0), speed=3.0, duration=20.0, intervals=20)
    config = SolverConfig(max_iterations=20, initialization="interpolate")
    result = SQPSolver(ocp, config).solve()

    print("=" * 70)
    print("SHIP MOTION PRIMITIVE")
    print("=" * 70)
    print(f"Status:      {result.status.value} ({result.reason})")
    print(f"Iterations:  {result.iterations}")
    print(f"Cost:        {result.cost:.6f}")
    print(f"Feasibility: {result.feasibility:.3e}")
    print(f"Optimality:  {result.optimality:.3e}")

    solution = result.solution
    x_end = solution.final_state
    print(f"\nFinal position: ({x_end[0]:.3f}, {x_end[1]:.3f})")
    print(f"Final yaw:      {np.degrees(x_end[2]):.2f} deg")
    print(f"Max rudder:     {np.degrees(np.max(np.abs(solution.controls[:, 0]))):.2f} deg")
    print(f"Max defect:     {solution.max_defect():.3e}")

    solution.savetxt("primitive_states.txt", "primitive_controls.txt")


if __name__ == "__main__":
    main()
