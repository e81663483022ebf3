"""Explicit Runge-Kutta tableaux."""

from shootsqp.methods.runge_kutta import (
    explicit_euler,
    heun,
    rk3,
    rk4,
    get_tableau,
)

__all__ = ["explicit_euler", "heun", "rk3", "rk4", "get_tableau"]
