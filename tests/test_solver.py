# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

import numpy as np
import pytest
from scipy import linalg

from multifit import exceptions, solver


solvers = pytest.mark.parametrize("solve", [solver.solve, solver.solve_numba],
                                  ids=["python", "numba"])


@solvers
def test_solve(solve):
    """solver.solve: positive definite matrix"""
    rs = np.random.RandomState(10)
    m = rs.normal(size=(5, 5))
    a = m @ m.T + 5 * np.eye(5)
    b = rs.normal(size=5)
    np.testing.assert_allclose(solve(a, b), np.linalg.solve(a, b))


@solvers
def test_solve_lower(solve):
    """solver.solve: only lower triangle is used"""
    a = np.array([[4., 100.], [2., 3.]])
    b = np.array([1., 2.])
    full = np.array([[4., 2.], [2., 3.]])
    np.testing.assert_allclose(solve(a, b), np.linalg.solve(full, b))


@solvers
def test_not_positive_definite(solve):
    """solver.solve: failure for indefinite matrix"""
    a = np.array([[1., 2.], [2., 1.]])
    with pytest.raises(exceptions.SolveFailure):
        solve(a, np.ones(2))
    with pytest.raises(np.linalg.LinAlgError):
        solve(np.zeros((3, 3)), np.ones(3))


@solvers
def test_nan(solve):
    """solver.solve: failure for non-finite entries"""
    a = np.eye(3)
    a[1, 1] = np.nan
    with pytest.raises(exceptions.SolveFailure):
        solve(a, np.ones(3))


def test_get_solver():
    """solver.get_solver"""
    assert solver.get_solver("python") is solver.solve
    assert solver.get_solver("numba") is solver.solve_numba
    with pytest.raises(ValueError):
        solver.get_solver("fortran")


def test_chol():
    """solver._chol: same factor as scipy.linalg.cho_factor"""
    rs = np.random.RandomState(3)
    m = rs.normal(size=(6, 6))
    a = m @ m.T + np.eye(6)
    l = np.full_like(a, np.nan)
    assert solver._chol(a, l) == 1
    c, lower = linalg.cho_factor(a, lower=True)
    assert lower
    np.testing.assert_allclose(l, np.tril(c))
    np.testing.assert_allclose(l @ l.T, a)

    assert solver._chol(np.array([[1., 2.], [2., 1.]]),
                        np.empty((2, 2))) == -1
