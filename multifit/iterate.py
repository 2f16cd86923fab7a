# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Fitting iterations

Each call of :py:func:`iterate_lm` or :py:func:`iterate_original` performs a
single fitting step for every peak of a :py:class:`fit.FitData` instance whose
status is "running". :py:func:`fit` repeats this until all peaks are done.

Every step works on a copy of the peak. If the update is not accepted, the
copy is discarded and the original is put back into the fit images, so that
the fit images always contain the last valid state of each peak.
"""
import logging

import numpy as np

from .config import use_defaults
from .data import status
from .exceptions import SolveFailure


_logger = logging.getLogger(__name__)


def _is_stable(old_error, new_error, tolerance):
    return abs(old_error - new_error) <= tolerance * max(abs(old_error), 1.)


def _aoi_changed(old, new):
    """Errors of `old` and `new` are not comparable if this is `True`"""
    return ((old.xi, old.yi, old.size_x, old.size_y) !=
            (new.xi, new.yi, new.size_x, new.size_y))


def _increase_lambda(fit_data, peak):
    """Increase the damping, mark the peak as lost when it is too large"""
    cfg = fit_data.config
    peak.lambda_ *= cfg.lambda_up
    if peak.lambda_ > cfg.lambda_max:
        peak.lambda_ = cfg.lambda_max
        peak.status = status.error
        fit_data.diagnostics["n_lost"] += 1
        _logger.debug("Lost peak %d", peak.index)


def _start_step(fit_data, slot):
    """Fetch a peak and compute its current error

    Returns
    -------
    store.Peak or None
        The peak. `None` if the current error could not be computed. In
        that case, the peak has been marked as an error.
    """
    current = fit_data.get_peak(slot)
    current.iterations += 1
    if not fit_data.calc_error(current):
        current.status = status.error
        fit_data.put_peak(slot, current)
        return None
    return current


def _try_update(fit_data, current, delta, clamp):
    """Apply an update to a copy of a peak and add the copy to the fit

    `current` must have been subtracted from the fit images. If the updated
    copy is invalid, it is discarded, `current` is added back and marked as
    an error.

    Returns
    -------
    store.Peak or None
        Updated copy, which is added to the fit images and whose error is
        calculated. `None` if the update was invalid.
    """
    working = fit_data.copy_peak(current)
    fit_data.model.update(fit_data, working, delta, clamp)
    fit_data.recenter(working)

    reason = fit_data.check(working)
    if reason is None:
        fit_data.add_peak(working)
        if not fit_data.calc_error(working):
            reason = "model value"
            fit_data.subtract_peak(working)
    if reason is None:
        return working

    _logger.debug("Invalid update of peak %d (%s)", current.index, reason)
    fit_data.free_peak(working)
    fit_data.add_peak(current)
    current.status = status.error
    return None


def _solve_damped(fit_data, jacobian, hessian, lambda_):
    idx = np.diag_indices_from(hessian)
    hessian = hessian.copy()
    hessian[idx] *= 1. + lambda_
    return fit_data.solve(hessian, jacobian)


def iterate_lm(fit_data):
    """Perform a single Levenberg-Marquardt step for all running peaks

    An update is accepted if it decreases the fit error, in which case the
    damping factor is decreased. Otherwise it is reverted and the damping is
    increased. If the damping exceeds its maximum, the peak is lost. Updates
    which move or resize the fitting area are always accepted since the
    errors are not comparable.

    Parameters
    ----------
    fit_data : fit.FitData
        Fitting session
    """
    cfg = fit_data.config
    fit_data.diagnostics["n_iterations"] += 1

    for slot in fit_data.running_indices():
        current = _start_step(fit_data, slot)
        if current is None:
            continue

        jacobian, hessian = fit_data.model.calc_jh(fit_data, current)
        fit_data.subtract_peak(current)

        try:
            delta = _solve_damped(fit_data, jacobian, hessian,
                                  current.lambda_)
        except SolveFailure:
            fit_data.diagnostics["n_dposv"] += 1
            fit_data.add_peak(current)
            _increase_lambda(fit_data, current)
            fit_data.put_peak(slot, current)
            continue

        working = _try_update(fit_data, current, delta, cfg.use_clamp)
        if working is None:
            fit_data.put_peak(slot, current)
            continue

        if _aoi_changed(current, working):
            # errors were calculated over different pixels, accept
            working.n_stable = 0
            fit_data.put_peak(slot, working)
            fit_data.free_peak(current)
            continue

        stable = _is_stable(current.error, working.error,
                            fit_data.tolerance)
        if working.error >= current.error:
            # revert
            fit_data.diagnostics["n_non_decr"] += 1
            fit_data.subtract_peak(working)
            fit_data.free_peak(working)
            fit_data.add_peak(current)
            # a rejected step within tolerance counts as a stable one
            current.n_stable = current.n_stable + 1 if stable else 0
            if stable and current.n_stable >= cfg.converge_count:
                current.status = status.converged
            else:
                _increase_lambda(fit_data, current)
            fit_data.put_peak(slot, current)
            continue

        if stable:
            working.n_stable += 1
            if working.n_stable >= cfg.converge_count:
                working.status = status.converged
        else:
            working.n_stable = 0
        working.lambda_ = max(working.lambda_ * cfg.lambda_down,
                              cfg.lambda_min)
        fit_data.put_peak(slot, working)
        fit_data.free_peak(current)


def iterate_original(fit_data):
    """Perform a single undamped fitting step for all running peaks

    Updates are always clamped. A peak is marked as an error as soon as the
    normal equations cannot be solved or the updated parameters are invalid.
    Updates are accepted even if the error increases.

    Parameters
    ----------
    fit_data : fit.FitData
        Fitting session
    """
    cfg = fit_data.config
    fit_data.diagnostics["n_iterations"] += 1

    for slot in fit_data.running_indices():
        current = _start_step(fit_data, slot)
        if current is None:
            continue

        jacobian, hessian = fit_data.model.calc_jh(fit_data, current)
        fit_data.subtract_peak(current)

        try:
            delta = fit_data.solve(hessian, jacobian)
        except SolveFailure:
            fit_data.diagnostics["n_dposv"] += 1
            fit_data.add_peak(current)
            current.status = status.error
            fit_data.put_peak(slot, current)
            continue

        working = _try_update(fit_data, current, delta, True)
        if working is None:
            fit_data.put_peak(slot, current)
            continue

        if _aoi_changed(current, working):
            working.n_stable = 0
        elif _is_stable(current.error, working.error, fit_data.tolerance):
            working.n_stable += 1
            if working.n_stable >= cfg.converge_count:
                working.status = status.converged
        else:
            working.n_stable = 0
        fit_data.put_peak(slot, working)
        fit_data.free_peak(current)


methods = {"lm": iterate_lm, "original": iterate_original}


@use_defaults
def fit(fit_data, max_iterations=None, method="lm"):
    """Iterate until all peaks are converged or lost

    Parameters
    ----------
    fit_data : fit.FitData
        Fitting session
    max_iterations : int or None, optional
        Maximum number of iterations. If `None`, use the value from
        :py:data:`config.rc`.
    method : {"lm", "original"}, optional
        Levenberg-Marquardt (:py:func:`iterate_lm`) or undamped
        (:py:func:`iterate_original`) iterations. Defaults to "lm".

    Returns
    -------
    int
        Number of iterations performed
    """
    try:
        step = methods[method]
    except KeyError:
        raise ValueError("Unknown method: " + str(method))

    n_iter = 0
    while n_iter < max_iterations and fit_data.get_unconverged():
        step(fit_data)
        n_iter += 1

    n_running = fit_data.get_unconverged()
    fit_data.diagnostics["n_non_converged"] += n_running
    _logger.info("Fit finished after %d iterations: %d peaks, %d errors, "
                 "%d not converged", n_iter, len(fit_data),
                 fit_data.get_n_error(), n_running)
    return n_iter
