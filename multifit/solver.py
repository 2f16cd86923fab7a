# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Solvers for the normal equations of a fitting step

Both solvers use a Cholesky decomposition of the symmetric coefficient
matrix and raise :py:class:`exceptions.SolveFailure` if it is not positive
definite. There is no fallback to a different method; the caller is expected
to increase the damping and try again.
"""
import numba
import numpy as np
from scipy import linalg

from .exceptions import SolveFailure


def solve(a, b):
    """Solve ``a @ x == b`` for symmetric, positive definite `a`

    Uses :py:func:`scipy.linalg.cho_factor`. Only the lower triangle of `a`
    is used.

    Parameters
    ----------
    a : numpy.ndarray
        Coefficient matrix
    b : numpy.ndarray
        Right hand side

    Returns
    -------
    numpy.ndarray
        Solution

    Raises
    ------
    exceptions.SolveFailure
        `a` is not positive definite or contains non-finite values
    """
    try:
        c = linalg.cho_factor(a, lower=True, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise SolveFailure(str(e)) from e
    return linalg.cho_solve(c, b, check_finite=False)


@numba.njit(nogil=True, cache=True)
def _chol(a, l):
    """Calculate Cholesky decomposition of positive definite, symmetric `a`

    This is the numba engine's counterpart of
    :py:func:`scipy.linalg.cho_factor` as used by :py:func:`solve`, which
    cannot be called from jitted code.
    Only uses the lower triangle of `a`.

    Parameters
    ----------
    a : numpy.ndarray
        Positive definite, symmetric matrix to be decomposed
    l : numpy.ndarray
        Output: lower triangular matrix such that l @ l.T == a

    Returns
    -------
    int
        -1 if there was an error, 1 otherwise
    """
    size = a.shape[0]
    for j in range(size):
        ljj = a[j, j]
        for k in range(j):
            ljj -= l[j, k]**2
        # also catches NaN
        if not ljj > 0.:
            return -1
        ljj = np.sqrt(ljj)
        l[j, j] = ljj

        for i in range(j):
            l[i, j] = 0.

        for i in range(j + 1, size):
            lij = a[i, j]
            for k in range(j):
                lij -= l[i, k] * l[j, k]
            l[i, j] = lij / ljj
    return 1


@numba.njit(nogil=True, cache=True)
def _eqn_solver(a, b, x):
    """Solve ``a @ x == b`` for positive definite, symmetric `a`

    Returns
    -------
    int
        -1 if there was an error, 1 otherwise
    """
    size = a.shape[0]
    l = np.empty((size, size))
    if _chol(a, l) < 0:
        return -1

    # forward substitution: l @ y == b
    y = np.empty(size)
    for i in range(size):
        yi = b[i]
        for j in range(i):
            yi -= l[i, j] * y[j]
        y[i] = yi / l[i, i]

    # backward substitution: l.T @ x == y
    for i in range(size - 1, -1, -1):
        xi = y[i]
        for j in range(i + 1, size):
            xi -= l[j, i] * x[j]
        x[i] = xi / l[i, i]

    return 1


def solve_numba(a, b):
    """Numba-accelerated version of :py:func:`solve`

    Parameters
    ----------
    a : numpy.ndarray
        Coefficient matrix. Only the lower triangle is used.
    b : numpy.ndarray
        Right hand side

    Returns
    -------
    numpy.ndarray
        Solution

    Raises
    ------
    exceptions.SolveFailure
        `a` is not positive definite or contains non-finite values
    """
    a = np.ascontiguousarray(a, dtype=float)
    b = np.ascontiguousarray(b, dtype=float)
    x = np.empty(len(b))
    if _eqn_solver(a, b, x) < 0 or not np.all(np.isfinite(x)):
        raise SolveFailure()
    return x


def get_solver(engine):
    """Get the solver function for an engine

    Parameters
    ----------
    engine : {"python", "numba"}
        Engine name

    Returns
    -------
    callable
        :py:func:`solve` or :py:func:`solve_numba`
    """
    if engine == "python":
        return solve
    if engine == "numba":
        return solve_numba
    raise ValueError("Unknown engine: " + str(engine))
