"""Ready-made dynamics models."""

from shootsqp.models.ship import ShipModel, primitive_problem, ship_cost

__all__ = ["ShipModel", "primitive_problem", "ship_cost"]
