"""Integrator factory."""

from shootsqp.config import SolverConfig
from shootsqp.integrators.base import Integrator
from shootsqp.integrators.explicit import ExplicitIntegrator
from shootsqp.methods.runge_kutta import get_tableau


def create_integrator(config: SolverConfig) -> Integrator:
    """
    Build the integrator named in the configuration.

    Only explicit tableaux are offered, so every choice maps onto the
    fixed-step ExplicitIntegrator.

    Args:
        config: Solver configuration

    Returns:
        Integrator instance
    """
    tableau = get_tableau(config.integrator)
    return ExplicitIntegrator(tableau, steps=config.integrator_steps)
