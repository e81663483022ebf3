"""Stage integrators with sensitivity propagation."""

from shootsqp.integrators.base import Integrator, SensitivityBlock
from shootsqp.integrators.explicit import ExplicitIntegrator
from shootsqp.integrators.factory import create_integrator

__all__ = [
    "Integrator",
    "SensitivityBlock",
    "ExplicitIntegrator",
    "create_integrator",
]
