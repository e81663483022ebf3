import numpy as np
import pytest

from shootsqp.core.tableau import ButcherTableau
from shootsqp.integrators import ExplicitIntegrator
from shootsqp.methods import explicit_euler, heun, rk3, rk4, get_tableau


@pytest.mark.parametrize("factory", [explicit_euler, heun, rk3, rk4])
def test_explicit_tableau_consistency(factory):
    tableau = factory()

    assert tableau.is_explicit
    assert tableau.A.shape == (tableau.s, tableau.s)
    assert np.isclose(tableau.b.sum(), 1.0)
    # Row-sum condition c_i = Σ_j a_ij
    assert np.allclose(tableau.A.sum(axis=1), tableau.c)


def test_order_conditions_rk4():
    tableau = rk4()
    A, b, c = tableau.A, tableau.b, tableau.c

    assert np.isclose(b @ c, 1.0 / 2.0)
    assert np.isclose(b @ c**2, 1.0 / 3.0)
    assert np.isclose(b @ (A @ c), 1.0 / 6.0)
    assert np.isclose(b @ c**3, 1.0 / 4.0)
    assert np.isclose(b @ (A @ (A @ c)), 1.0 / 24.0)


def test_implicit_tableaux_are_not_explicit():
    b = np.array([0.5, 0.5])
    c = np.array([0.0, 1.0])

    dirk = ButcherTableau(A=np.array([[0.5, 0.0], [0.5, 0.5]]), b=b, c=c)
    implicit = ButcherTableau(A=np.array([[0.25, 0.25], [0.5, 0.5]]), b=b, c=c)

    assert not dirk.is_explicit
    assert not implicit.is_explicit


def test_invalid_tableaux_rejected():
    with pytest.raises(ValueError):
        ButcherTableau(A=np.zeros((2, 2)), b=np.array([1.0]), c=np.zeros(2))
    with pytest.raises(ValueError):
        ButcherTableau(A=np.zeros((1, 1)), b=np.array([0.5]), c=np.zeros(1))

    implicit = ButcherTableau(A=np.array([[0.5]]), b=np.array([1.0]), c=np.array([0.5]))
    with pytest.raises(ValueError):
        ExplicitIntegrator(implicit)


def test_get_tableau_lookup():
    assert get_tableau("rk4").order == 4
    assert get_tableau("euler").s == 1
    with pytest.raises(ValueError, match="unknown integrator"):
        get_tableau("gauss-legendre")
