"""Tagged constraint variant with a uniform evaluate/linearize capability."""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from shootsqp.core.errors import MalformedProblem, NumericFault
from shootsqp.utils.differences import split_jacobian


class ConstraintKind(Enum):
    """Equality (lower == upper) or two-sided inequality."""
    EQUALITY = auto()
    INEQUALITY = auto()


class Attachment(Enum):
    """Where along the horizon a constraint applies."""
    START = auto()  # first shooting node
    END = auto()    # last shooting node
    PATH = auto()   # every shooting node


class Target(Enum):
    """Decision variable family addressed by a component constraint."""
    STATE = auto()
    CONTROL = auto()
    PARAMETER = auto()


@dataclass(frozen=True, eq=False)
class Constraint:
    """
    One member of the constraint set.

    Component constraints (``target`` set) address a single state, control or
    parameter entry and end up as simple variable bounds. General constraints
    carry a residual h(t, x, u, p) and are linearized by the assembler.
    """

    kind: ConstraintKind
    attachment: Attachment
    lower: NDArray
    upper: NDArray
    function: Optional[Callable] = None
    jacobian: Optional[Callable] = None
    target: Optional[Target] = None
    index: Optional[int] = None
    name: str = ""

    def __post_init__(self) -> None:
        if self.lower.shape != self.upper.shape:
            raise MalformedProblem(
                f"{self}: bounds have shapes {self.lower.shape} and {self.upper.shape}"
            )
        if np.any(np.isnan(self.lower)) or np.any(np.isnan(self.upper)):
            raise MalformedProblem(f"{self}: NaN bound")
        if np.any(self.lower > self.upper):
            raise MalformedProblem(f"{self}: lower bound exceeds upper bound")
        if self.kind == ConstraintKind.EQUALITY and not np.array_equal(
            self.lower, self.upper
        ):
            raise MalformedProblem(f"{self}: equality needs lower == upper")

    def __repr__(self) -> str:
        if self.is_component:
            what = f"{self.target.name.lower()}[{self.index}]"
        else:
            what = self.name or "h(t, x, u, p)"
        return f"<Constraint {self.kind.name} {self.attachment.name} {what}>"

    @property
    def is_component(self) -> bool:
        return self.target is not None

    @property
    def size(self) -> int:
        return self.lower.size

    @classmethod
    def fixed(
        cls, target: Target, index: int, value: float, attachment: Attachment
    ) -> "Constraint":
        """Pin a single variable component to a value."""
        bound = np.array([float(value)])
        return cls(
            kind=ConstraintKind.EQUALITY,
            attachment=attachment,
            lower=bound,
            upper=bound.copy(),
            target=target,
            index=int(index),
        )

    @classmethod
    def bounded(
        cls,
        target: Target,
        index: int,
        lower: float,
        upper: float,
        attachment: Attachment,
    ) -> "Constraint":
        """Box bound on a single variable component."""
        kind = ConstraintKind.EQUALITY if lower == upper else ConstraintKind.INEQUALITY
        return cls(
            kind=kind,
            attachment=attachment,
            lower=np.array([float(lower)]),
            upper=np.array([float(upper)]),
            target=target,
            index=int(index),
        )

    @classmethod
    def general(
        cls,
        function: Callable,
        lower: Union[float, Sequence[float]],
        upper: Union[float, Sequence[float]],
        attachment: Attachment = Attachment.PATH,
        jacobian: Optional[Callable] = None,
        name: str = "",
    ) -> "Constraint":
        """Nonlinear constraint lower <= function(t, x, u, p) <= upper."""
        lower = np.atleast_1d(np.asarray(lower, dtype=float))
        upper = np.atleast_1d(np.asarray(upper, dtype=float))
        lower, upper = np.broadcast_arrays(lower, upper)
        kind = (
            ConstraintKind.EQUALITY
            if np.array_equal(lower, upper)
            else ConstraintKind.INEQUALITY
        )
        return cls(
            kind=kind,
            attachment=attachment,
            lower=lower.copy(),
            upper=upper.copy(),
            function=function,
            jacobian=jacobian,
            name=name,
        )

    def evaluate(self, t: float, x: NDArray, u: NDArray, p: NDArray) -> NDArray:
        """Residual h(t, x, u, p), shape (size,)."""
        if self.is_component:
            source = {Target.STATE: x, Target.CONTROL: u, Target.PARAMETER: p}
            return np.array([source[self.target][self.index]])

        value = np.atleast_1d(np.asarray(self.function(t, x, u, p), dtype=float))
        if value.shape != self.lower.shape:
            raise MalformedProblem(
                f"{self}: residual has shape {value.shape}, bounds {self.lower.shape}"
            )
        if not np.all(np.isfinite(value)):
            raise NumericFault(f"{self} evaluated to a non-finite value")
        return value

    def linearize(
        self, t: float, x: NDArray, u: NDArray, p: NDArray
    ) -> tuple[NDArray, NDArray, NDArray, NDArray]:
        """
        Residual and its Jacobians.

        Returns:
            (h, ∂h/∂x, ∂h/∂u, ∂h/∂p)
        """
        h = self.evaluate(t, x, u, p)

        if self.is_component:
            hx = np.zeros((1, x.size))
            hu = np.zeros((1, u.size))
            hp = np.zeros((1, p.size))
            block = {Target.STATE: hx, Target.CONTROL: hu, Target.PARAMETER: hp}
            block[self.target][0, self.index] = 1.0
            return h, hx, hu, hp

        if self.jacobian is not None:
            hx, hu, hp = (np.atleast_2d(np.asarray(J, dtype=float))
                          for J in self.jacobian(t, x, u, p))
            hx = hx.reshape(h.size, x.size)
            hu = hu.reshape(h.size, u.size)
            hp = hp.reshape(h.size, p.size)
        else:
            hx, hu, hp = split_jacobian(
                lambda x_, u_, p_: self.function(t, x_, u_, p_), x, u, p
            )
        return h, hx, hu, hp
