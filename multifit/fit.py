# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Fitting session

A :py:class:`FitData` instance holds everything needed to fit many, possibly
overlapping peaks in a single image: the image itself, the images calculated
from all peaks (foreground and background), the number of peaks covering
each pixel, and the peak data. Peaks are added to and removed from the
calculated images as they are being fitted.

The fitting iterations themselves are implemented in :py:mod:`iterate`.
"""
import logging
import math

import numba
import numpy as np
import pandas as pd
from scipy import special

from . import solver
from .config import FitConfig
from .data import (all_params, col_nums, diagnostics_names, float_properties,
                   int_properties, num_peak_params, property_aliases, status)
from .store import Peak, PeakStore


_logger = logging.getLogger(__name__)


def _python_add_to_fit(f_data, bg_data, bg_counts, psf, bg, xi, yi, sign):
    sel = (slice(yi, yi + psf.shape[0]), slice(xi, xi + psf.shape[1]))
    f_data[sel] += sign * psf
    bg_data[sel] += sign * bg
    bg_counts[sel] += sign


@numba.njit(nogil=True, cache=True)
def _numba_add_to_fit(f_data, bg_data, bg_counts, psf, bg, xi, yi, sign):
    for j in range(psf.shape[0]):
        img_i = yi + j
        for i in range(psf.shape[1]):
            img_j = xi + i
            f_data[img_i, img_j] += sign * psf[j, i]
            bg_data[img_i, img_j] += sign * bg
            bg_counts[img_i, img_j] += sign


def _with_hysteresis(new, old, hysteresis):
    """Integer part of `new` if it differs enough from `old`, else `old`"""
    if abs(new - old - 0.5) > hysteresis:
        return int(math.floor(new))
    return old


class FitData(object):
    """Fitting session for a single image

    Attributes
    ----------
    model : models.PeakModel
        Peak model used for all peaks
    config : config.FitConfig
        Fitting constants
    tolerance : float
        A fit is considered converged if its error changes less than this
        (relative to the error, or absolutely for errors below 1) between
        iterations.
    minimum_height : float
        Peaks with smaller heights are invalid. Estimated starting heights
        are not allowed to be lower.
    xoff, yoff, zoff : float
        Offsets between the peak center parameters and the actual centers
    scmos_term : numpy.ndarray
        Per-pixel calibration term (variance / gain**2) for sCMOS cameras.
        It is added to both the image and the calculated model.
    x_data : numpy.ndarray
        Image data plus `scmos_term`
    f_data : numpy.ndarray
        Sum of the rendered peaks (without background) plus `scmos_term`
    bg_data : numpy.ndarray
        Sum of the background parameters of the peaks covering each pixel
    bg_counts : numpy.ndarray
        Number of peaks covering each pixel
    bg_estimate : numpy.ndarray or None
        Externally calculated background estimate
    diagnostics : dict
        Diagnostics counters, see :py:data:`data.diagnostics_names`
    """
    def __init__(self, model, scmos_term, tolerance=1e-6, config=None,
                 minimum_height=0., xoff=0., yoff=0., zoff=0.):
        """Parameters
        ----------
        model : models.PeakModel
            Peak model
        scmos_term : numpy.ndarray
            Per-pixel calibration term. Also determines the image size. Pass
            an array of zeros if not applicable.
        tolerance : float, optional
            Fit tolerance. Defaults to 1e-6.
        config : config.FitConfig or None, optional
            Fitting constants. If `None`, use the defaults.
        minimum_height : float, optional
            Minimum valid peak height. Defaults to 0.
        xoff, yoff, zoff : float, optional
            Offsets between center parameters and actual centers. Default
            to 0.
        """
        self.config = FitConfig() if config is None else config
        self.model = model
        self.scmos_term = np.array(scmos_term, dtype=float)
        if self.scmos_term.ndim != 2:
            raise ValueError("Calibration term needs to be a 2D array")
        self.tolerance = tolerance
        self.minimum_height = minimum_height
        self.xoff = xoff
        self.yoff = yoff
        self.zoff = zoff

        self.diagnostics = dict.fromkeys(diagnostics_names, 0)
        self.bg_estimate = None
        self.x_data = self.scmos_term.copy()
        self.solve = solver.get_solver(self.config.engine)
        self._add_to_fit = (_numba_add_to_fit
                            if self.config.engine == "numba"
                            else _python_add_to_fit)

        self._store = PeakStore(self.config.n_fitting, self.config.chunk_size)
        self._next_index = 0
        self._reset_fit_images()

    def _reset_fit_images(self):
        self.f_data = self.scmos_term.copy()
        self.bg_data = np.zeros(self.image_shape)
        self.bg_counts = np.zeros(self.image_shape, dtype=int)

    @property
    def image_shape(self):
        """Image shape (rows, columns)"""
        return self.scmos_term.shape

    @property
    def image_size_x(self):
        """Image size in x direction (fast axis)"""
        return self.scmos_term.shape[1]

    @property
    def image_size_y(self):
        """Image size in y direction (slow axis)"""
        return self.scmos_term.shape[0]

    def __len__(self):
        return len(self._store)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.cleanup()

    def _as_image(self, a, what):
        a = np.asarray(a, dtype=float)
        if a.shape != self.image_shape:
            raise ValueError("{} shape {} does not match image shape "
                             "{}".format(what, a.shape, self.image_shape))
        return a

    def new_image(self, image):
        """Set a new image to fit

        All peaks are removed and the calculated images are reset.

        Parameters
        ----------
        image : numpy.ndarray
            Image data
        """
        image = self._as_image(image, "Image")
        self._free_peaks()
        self.x_data = image + self.scmos_term
        self._reset_fit_images()

    def new_background(self, background):
        """Set a new background estimate

        The estimate is used for initial background values when adding peaks
        in "finder" mode (see :py:meth:`new_peaks`).

        Parameters
        ----------
        background : numpy.ndarray
            Background estimate
        """
        self.bg_estimate = self._as_image(background, "Background").copy()

    def _free_peaks(self):
        for md in self._store.field("model_data"):
            if md is not None:
                self.model.free_peak_data(md)
        self._store.clear()

    def cleanup(self):
        """Release all peaks and images

        The instance cannot be used any more afterwards.
        """
        if self._store is None:
            return
        self._free_peaks()
        self._store = None
        self.x_data = self.f_data = self.bg_data = self.bg_counts = None
        self.bg_estimate = None

    # Peak storage
    def get_peak(self, slot):
        """Get a copy of a peak

        Parameters
        ----------
        slot : int
            Storage position

        Returns
        -------
        store.Peak
            Independent copy of the peak. Hand it back to
            :py:meth:`put_peak` or release it with :py:meth:`free_peak`.
        """
        ret = self._store.get(slot)
        ret.model_data = self.model.copy_peak_data(ret.model_data)
        return ret

    def put_peak(self, slot, peak):
        """Store a peak

        The store takes ownership of the peak's model data.

        Parameters
        ----------
        slot : int
            Storage position
        peak : store.Peak
            Peak data
        """
        old = self._store.put(slot, peak)
        if old is not None and old is not peak.model_data:
            self.model.free_peak_data(old)
        peak.model_data = None

    def copy_peak(self, peak):
        """Deep copy of a peak (including model data)"""
        return peak.copy(self.model)

    def free_peak(self, peak):
        """Release the model data of a peak which is not stored"""
        if peak.model_data is not None:
            self.model.free_peak_data(peak.model_data)
            peak.model_data = None

    def running_indices(self):
        """Storage positions of peaks with "running" status"""
        return self._store.running()

    def new_peaks(self, params, mode="fit"):
        """Add peaks

        Heights below :py:attr:`minimum_height` are raised to it. Peaks with
        non-positive widths (if the model uses them) or fitting areas outside
        of the margin are marked as errors and not added to the fit images.

        Parameters
        ----------
        params : array-like, shape(n, 7) or shape(n, 9)
            Peak parameters (height, x, xwidth, y, ywidth, background, z) in
            external units, optionally followed by status and error columns.
            If there is no status column, all peaks are "running".
        mode : {"fit", "finder"}, optional
            In "fit" mode, heights and backgrounds are used as passed. In
            "finder" mode, the background is initialized from the background
            estimate (if set) and the height is estimated from the image.
            Defaults to "fit".

        Returns
        -------
        range
            Storage positions of the new peaks
        """
        params = np.array(params, dtype=float, ndmin=2)
        if not params.size:
            return range(len(self), len(self))
        if params.shape[1] not in (num_peak_params, len(all_params)):
            raise ValueError("params need {} or {} columns".format(
                num_peak_params, len(all_params)))
        if mode not in ("fit", "finder"):
            raise ValueError("Unknown mode: " + str(mode))

        internal = self.model.to_internal(params[:, :num_peak_params])
        slots = self._store.grow(len(params))
        for k, slot in enumerate(slots):
            peak = Peak(self.config.n_fitting)
            peak.index = self._next_index
            self._next_index += 1
            peak.params[:] = internal[k]
            if params.shape[1] > num_peak_params:
                peak.status = int(params[k, col_nums.status])
            else:
                peak.status = status.running
            peak.lambda_ = self.config.lambda_start
            peak.clamp[:] = self.config.clamp_start
            peak.model_data = self.model.alloc_peak_data()

            if self._valid_width(peak):
                self.recenter(peak)
            elif peak.status != status.error:
                self.diagnostics["n_neg_width"] += 1
                peak.status = status.error
                _logger.debug("Peak %d has an invalid width", peak.index)
            if peak.status != status.error:
                peak.params[col_nums.height] = max(
                    peak.params[col_nums.height], self.minimum_height)
                if not self._in_margin(peak):
                    self.diagnostics["n_margin"] += 1
                    peak.status = status.error
                    _logger.debug("Peak %d is outside of the margin",
                                  peak.index)
                else:
                    if mode == "finder":
                        self._estimate_background(peak)
                        self.estimate_peak_height(peak)
                    self.add_peak(peak)
                    if not self.calc_error(peak):
                        peak.status = status.error
            self.put_peak(slot, peak)
        return slots

    # Peak lifecycle
    def aoi(self, peak):
        """Slices selecting a peak's fitting area from an image"""
        return (slice(peak.yi, peak.yi + peak.size_y),
                slice(peak.xi, peak.xi + peak.size_x))

    def model_values(self, sel):
        """Calculated image (including background and calibration term)

        Parameters
        ----------
        sel : tuple of slice
            Image region, e.g. from :py:meth:`aoi`. All pixels need to be
            covered by at least one peak.

        Returns
        -------
        numpy.ndarray
        """
        return self.f_data[sel] + self.bg_data[sel] / self.bg_counts[sel]

    def recenter(self, peak):
        """Update the location and size of a peak's fitting area

        Location and size only change if the new values differ from the
        current ones by more than the configured hysteresis. A peak that has
        no fitting area yet gets one without hysteresis.

        Parameters
        ----------
        peak : store.Peak
            Peak data. Must not be added to the fit images.
        """
        hyst = self.config.hysteresis
        half_size = self.model.aoi_half_size(peak)
        centers = (peak.params[col_nums.x] - self.xoff,
                   peak.params[col_nums.y] - self.yoff)
        new_geom = []
        for hs, c, start, size in zip(half_size, centers,
                                      (peak.xi, peak.yi),
                                      (peak.size_x, peak.size_y)):
            if size > 0:
                old_hs = (size - 1) // 2
                new_hs = _with_hysteresis(hs, old_hs, hyst)
                new_c = _with_hysteresis(c, start + old_hs, hyst)
            else:
                new_hs = int(math.floor(hs))
                new_c = int(math.floor(c))
            new_geom.append((new_c - new_hs, 2 * new_hs + 1))
        (peak.xi, peak.size_x), (peak.yi, peak.size_y) = new_geom

    def recenter_peaks(self):
        """Update the fitting areas of all running peaks

        This is needed e.g. after changing :py:attr:`xoff` or
        :py:attr:`yoff`. Each peak is subtracted from the fit images,
        recentered (see :py:meth:`recenter`) and added again. Peaks whose
        new fitting area is outside of the margin are marked as errors and
        not added.
        """
        for slot in self.running_indices():
            peak = self.get_peak(slot)
            if peak.added:
                self.subtract_peak(peak)
            self.recenter(peak)
            if not self._in_margin(peak):
                self.diagnostics["n_margin"] += 1
                peak.status = status.error
                _logger.debug("Peak %d is outside of the margin", peak.index)
            else:
                self.add_peak(peak)
                if not self.calc_error(peak):
                    peak.status = status.error
            self.put_peak(slot, peak)

    def _valid_width(self, peak):
        return not self.model.uses_width or (
            peak.params[col_nums.xwidth] > 0. and
            peak.params[col_nums.ywidth] > 0.)

    def _in_margin(self, peak):
        m = self.config.margin
        return (peak.xi >= m and peak.yi >= m and
                peak.xi + peak.size_x <= self.image_size_x - m and
                peak.yi + peak.size_y <= self.image_size_y - m)

    def check(self, peak):
        """Check whether peak parameters are valid

        Parameters
        ----------
        peak : store.Peak
            Peak data

        Returns
        -------
        str or None
            Reason ("height", "width", "margin", or "model") if the peak is
            invalid, `None` otherwise.
        """
        if peak.params[col_nums.height] < self.minimum_height:
            self.diagnostics["n_neg_height"] += 1
            return "height"
        if not self._valid_width(peak):
            self.diagnostics["n_neg_width"] += 1
            return "width"
        if not self._in_margin(peak):
            self.diagnostics["n_margin"] += 1
            return "margin"
        if not self.model.check(peak):
            return "model"
        return None

    def add_peak(self, peak):
        """Render a peak and add it to the fit images

        Parameters
        ----------
        peak : store.Peak
            Peak data. Must not be added already.
        """
        if peak.added:
            raise RuntimeError(
                "Peak {} has already been added".format(peak.index))
        self.model.calc_shape(self, peak)
        self._add_to_fit(self.f_data, self.bg_data, self.bg_counts, peak.psf,
                         peak.params[col_nums.background], peak.xi, peak.yi,
                         1)
        peak.added = 1

    def subtract_peak(self, peak):
        """Remove a peak's last rendered shape from the fit images

        Parameters
        ----------
        peak : store.Peak
            Peak data. Must have been added.
        """
        if not peak.added:
            raise RuntimeError(
                "Peak {} has not been added".format(peak.index))
        self._add_to_fit(self.f_data, self.bg_data, self.bg_counts, peak.psf,
                         peak.params[col_nums.background], peak.xi, peak.yi,
                         -1)
        peak.added = 0

    def calc_error(self, peak):
        """Calculate the fit error of a peak

        This is the Poisson maximum likelihood deviance over the peak's
        fitting area. The peak has to be added.

        Parameters
        ----------
        peak : store.Peak
            Peak data, its `error` attribute is updated.

        Returns
        -------
        bool
            `False` if the calculated image is not positive somewhere in
            the fitting area. In that case, the error is not updated.
        """
        sel = self.aoi(peak)
        fi = self.model_values(sel)
        if np.any(fi <= 0.):
            self.diagnostics["n_neg_fi"] += 1
            return False
        xi = self.x_data[sel]
        peak.error = float(np.sum(
            2. * (fi - xi) -
            2. * (special.xlogy(xi, fi) - special.xlogy(xi, xi))))
        return True

    def _estimate_background(self, peak):
        if self.bg_estimate is not None:
            peak.params[col_nums.background] = np.mean(
                self.bg_estimate[self.aoi(peak)])

    def estimate_peak_height(self, peak):
        """Estimate the height of a peak from the image

        Least squares estimate comparing the rendered shape to the image
        minus the fit images and the peak's background. The result is not
        less than :py:attr:`minimum_height`.

        Parameters
        ----------
        peak : store.Peak
            Peak data, not added to the fit images. The height parameter is
            updated.
        """
        peak.params[col_nums.height] = 1.
        self.model.calc_shape(self, peak)
        sel = self.aoi(peak)
        residual = (self.x_data[sel] - self.f_data[sel] -
                    peak.params[col_nums.background])
        norm = np.sum(peak.psf**2)
        height = np.sum(peak.psf * residual) / norm if norm > 0 else 0.
        peak.params[col_nums.height] = max(height, self.minimum_height)

    def reset_peak(self, slot, params=None):
        """Restart fitting of a peak

        Lambda and clamp values are reset, the status is set to "running",
        and the peak is rendered again.

        Parameters
        ----------
        slot : int
            Storage position
        params : array-like or None, optional
            New parameters (external units). If `None`, keep the current ones.
        """
        peak = self.get_peak(slot)
        if peak.added:
            self.subtract_peak(peak)
        if params is not None:
            peak.params[:] = self.model.to_internal(
                np.array(params, dtype=float, ndmin=2))[0]
        peak.lambda_ = self.config.lambda_start
        peak.clamp[:] = self.config.clamp_start
        peak.sign[:] = 0
        peak.n_stable = 0
        peak.status = status.running

        self.recenter(peak)
        if not self._in_margin(peak):
            self.diagnostics["n_margin"] += 1
            peak.status = status.error
        else:
            self.add_peak(peak)
            if not self.calc_error(peak):
                peak.status = status.error
        _logger.debug("Reset peak %d", peak.index)
        self.put_peak(slot, peak)

    def reset_clamp_values(self):
        """Reset clamp values and update signs of all peaks"""
        self._store.fill("clamp", self.config.clamp_start)
        self._store.fill("sign", 0)

    def set_peak_status(self, statuses):
        """Set the status of all peaks

        Peaks whose status is set to "error" are removed from the fit images.
        Peaks which were not added are added if their new status is not
        "error".

        Parameters
        ----------
        statuses : array-like of int
            New status for each peak
        """
        statuses = np.asarray(statuses, dtype=int)
        if statuses.shape != (len(self),):
            raise ValueError("Need one status per peak")
        for slot, st in enumerate(statuses):
            peak = self.get_peak(slot)
            if st == status.error:
                if peak.added:
                    self.subtract_peak(peak)
            elif not peak.added:
                if self._in_margin(peak):
                    self.add_peak(peak)
                    if not self.calc_error(peak):
                        st = status.error
                else:
                    self.diagnostics["n_margin"] += 1
                    st = status.error
            peak.status = st
            self.put_peak(slot, peak)

    def remove_error_peaks(self):
        """Remove all peaks with "error" status

        Their contributions are subtracted from the fit images first.

        Returns
        -------
        int
            Number of removed peaks
        """
        keep = self._store.field("status") != status.error
        err_slots = np.nonzero(~keep)[0]
        for slot in err_slots:
            peak = self._store.get(slot)
            if peak.added:
                self.subtract_peak(peak)
            if peak.model_data is not None:
                self.model.free_peak_data(peak.model_data)
        self._store.compact(keep)
        if len(err_slots):
            _logger.debug("Removed %d error peaks", len(err_slots))
        return len(err_slots)

    # Results
    def peak_sum(self, peak):
        """Sum of the rendered peak over its fitting area"""
        return float(np.sum(peak.psf))

    def peak_bg_sum(self, peak):
        """Sum of the rendered peak plus background over its fitting area"""
        return float(np.sum(peak.psf) +
                     peak.params[col_nums.background] * peak.psf.size)

    def get_fit_image(self):
        """Image calculated from all peaks (including background)"""
        bg = np.divide(self.bg_data, self.bg_counts,
                       out=np.zeros(self.image_shape),
                       where=self.bg_counts > 0)
        return self.f_data - self.scmos_term + bg

    def get_residual(self):
        """Difference between the image and the calculated image"""
        return self.x_data - self.scmos_term - self.get_fit_image()

    def get_n_error(self):
        """Number of peaks with "error" status"""
        return int(np.count_nonzero(self._store.field("status") ==
                                    status.error))

    def get_unconverged(self):
        """Number of peaks with "running" status"""
        return len(self.running_indices())

    def get_peak_property(self, name):
        """Get a property of all peaks

        Parameters
        ----------
        name : str
            Property name. Any of :py:data:`data.peak_params` (values in
            external units, e.g. sigma for Gaussian widths), "error",
            "lambda", "sum", "bg_sum", "status", "iterations", "index",
            "xi", "yi", "size_x", "size_y", or one of the aliases "x-center",
            "x-width", "y-center", "y-width", "z-center".

        Returns
        -------
        numpy.ndarray
            Property values, one per peak. Integer properties are returned as
            integer arrays, everything else as float arrays.
        """
        name = property_aliases.get(name, name)
        if name in float_properties:
            field, col = float_properties[name]
            if field == "params":
                return self.model.to_external(
                    self._store.field("params"))[:, col]
            if field in ("sum", "bg_sum"):
                return np.array([self._psf_sum(i, field == "bg_sum")
                                 for i in range(len(self))], dtype=float)
            return np.array(self._store.field(field), dtype=float)
        if name in int_properties:
            field, _ = int_properties[name]
            return np.array(self._store.field(field), dtype=int)
        raise ValueError("Unknown property: " + str(name))

    def _psf_sum(self, slot, with_bg):
        psf = self._store.field("psf")[slot]
        if psf is None:
            return 0.
        ret = np.sum(psf)
        if with_bg:
            ret += self._store.field("params")[slot, col_nums.background] * \
                psf.size
        return ret

    def get_results(self):
        """Fit results for all peaks

        Returns
        -------
        numpy.ndarray, shape(n, 9)
            Parameters in external units, status, and error for each peak
        """
        return np.hstack([
            self.model.to_external(self._store.field("params")),
            self._store.field("status")[:, np.newaxis],
            self._store.field("error")[:, np.newaxis]])

    def to_dataframe(self):
        """Fit results as a :py:class:`pandas.DataFrame`

        Returns
        -------
        pandas.DataFrame
            One row per peak. Columns are :py:data:`data.all_params` plus
            "iterations" and "index".
        """
        ret = pd.DataFrame(self.get_results(), columns=all_params)
        ret["status"] = ret["status"].astype(int)
        ret["iterations"] = self.get_peak_property("iterations")
        ret["index"] = self.get_peak_property("index")
        return ret

    def get_diagnostics(self):
        """Copy of the diagnostics counters"""
        return dict(self.diagnostics)
