# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

r"""Gaussian peak models

Peaks are modeled as :math:`h \exp(-s_x (x - x_c)^2) \exp(-s_y (y - y_c)^2)`.
Internally, the width parameters store the exponential factors
:math:`s = \frac{1}{2\sigma^2}`; the user passes and gets sigmas.
"""
import numpy as np

from ..data import col_nums
from .base import PeakModel


class Gaussian(PeakModel):
    """Base class for Gaussian models

    Override :py:attr:`fit_params` to select the free parameters.
    """
    def __init__(self, max_half_size=10):
        """Parameters
        ----------
        max_half_size : int, optional
            The fitting area extends at most this many pixels from the center
            in each direction. Defaults to 10.
        """
        self.max_half_size = max_half_size

    def alloc_peak_data(self):
        # abscissae and 1D Gaussians for both directions
        return {"dx": np.zeros(0), "dy": np.zeros(0),
                "ex": np.zeros(0), "ey": np.zeros(0)}

    def copy_peak_data(self, data):
        return {k: v.copy() for k, v in data.items()}

    def to_internal(self, params):
        ret = np.array(params, dtype=float)
        w = ret[:, [col_nums.xwidth, col_nums.ywidth]]
        with np.errstate(divide="ignore"):
            ret[:, [col_nums.xwidth, col_nums.ywidth]] = np.where(
                w > 0, 1. / (2. * w**2), -1.)
        return ret

    def to_external(self, params):
        ret = np.array(params, dtype=float)
        w = ret[:, [col_nums.xwidth, col_nums.ywidth]]
        with np.errstate(divide="ignore", invalid="ignore"):
            ret[:, [col_nums.xwidth, col_nums.ywidth]] = np.where(
                w > 0, np.sqrt(1. / (2. * w)), np.nan)
        return ret

    def aoi_half_size(self, peak):
        ret = []
        for c in (col_nums.xwidth, col_nums.ywidth):
            w = peak.params[c]
            # fall back to 1 pixel for invalid widths
            hw = 4. * np.sqrt(1. / (2. * w)) if w > 0 else 1.
            ret.append(min(hw, self.max_half_size))
        return tuple(ret)

    def calc_shape(self, fit_data, peak):
        d = peak.model_data
        x = peak.params[col_nums.x] - fit_data.xoff
        y = peak.params[col_nums.y] - fit_data.yoff
        d["dx"] = np.arange(peak.xi, peak.xi + peak.size_x) - x
        d["dy"] = np.arange(peak.yi, peak.yi + peak.size_y) - y
        d["ex"] = np.exp(-d["dx"]**2 * peak.params[col_nums.xwidth])
        d["ey"] = np.exp(-d["dy"]**2 * peak.params[col_nums.ywidth])
        peak.psf = (peak.params[col_nums.height] *
                    d["ey"][:, np.newaxis] * d["ex"][np.newaxis, :])

    def _derivative_terms(self, fit_data, peak):
        """Derivatives with respect to each parameter

        Returns
        -------
        dict
            Maps parameter index to derivative array
        """
        d = peak.model_data
        h = peak.params[col_nums.height]
        wx = peak.params[col_nums.xwidth]
        wy = peak.params[col_nums.ywidth]
        dx = d["dx"][np.newaxis, :]
        dy = d["dy"][:, np.newaxis]
        e = d["ey"][:, np.newaxis] * d["ex"][np.newaxis, :]
        return {col_nums.height: e,
                col_nums.x: 2. * h * wx * dx * e,
                col_nums.xwidth: -h * dx**2 * e,
                col_nums.y: 2. * h * wy * dy * e,
                col_nums.ywidth: -h * dy**2 * e,
                col_nums.background: np.ones_like(e)}

    def calc_derivatives(self, fit_data, peak):
        terms = self._derivative_terms(fit_data, peak)
        ret = np.empty((self.n_fit, peak.size_y, peak.size_x))
        for k, targets in enumerate(self.fit_params):
            ret[k] = sum(terms[t] for t in targets)
        return ret

    def mass(self, params):
        # integral of the 2D Gaussian
        return (2 * np.pi * params[:, col_nums.height] *
                params[:, col_nums.xwidth] * params[:, col_nums.ywidth])


class Gaussian2DFixed(Gaussian):
    """Fit center coordinates, background, and height; fixed width"""
    name = "2dfixed"
    fit_params = ((col_nums.height,), (col_nums.x,), (col_nums.y,),
                  (col_nums.background,))


class Gaussian2D(Gaussian):
    """Fit center coordinates, width, background, and height

    Circular peaks are assumed, i.e. the width is the same in x and y
    direction.
    """
    name = "2d"
    fit_params = ((col_nums.height,), (col_nums.x,), (col_nums.y,),
                  (col_nums.xwidth, col_nums.ywidth), (col_nums.background,))


class Gaussian3D(Gaussian):
    """Fit center coordinates, widths, background, and height

    Elliptic peaks are assumed, i.e. widths in x and y direction are
    independent.
    """
    name = "3d"
    fit_params = ((col_nums.height,), (col_nums.x,), (col_nums.xwidth,),
                  (col_nums.y,), (col_nums.ywidth,), (col_nums.background,))


class GaussianZ(Gaussian):
    """Fit center coordinates, z position, background, and height

    Widths are determined from the z position via a
    :py:class:`z_calib.ZCalibration`.
    """
    name = "z"
    fit_params = ((col_nums.height,), (col_nums.x,), (col_nums.y,),
                  (col_nums.z,), (col_nums.background,))

    def __init__(self, z_calib, max_half_size=10):
        """Parameters
        ----------
        z_calib : z_calib.ZCalibration
            Calibration curves
        max_half_size : int, optional
            The fitting area extends at most this many pixels from the center
            in each direction. Defaults to 10.
        """
        super().__init__(max_half_size)
        self.z_calib = z_calib

    def to_internal(self, params):
        ret = np.array(params, dtype=float)
        ret[:, col_nums.z] = self.z_calib.clip(ret[:, col_nums.z])
        ret[:, [col_nums.xwidth, col_nums.ywidth]] = \
            self.z_calib.exp_factor_from_z(ret[:, col_nums.z]).T
        return ret

    def _derivative_terms(self, fit_data, peak):
        terms = super()._derivative_terms(fit_data, peak)
        z = peak.params[col_nums.z]
        factor = peak.params[[col_nums.xwidth, col_nums.ywidth]]
        ds_dx, ds_dy = self.z_calib.exp_factor_der(z, factor)
        terms[col_nums.z] = (ds_dx * terms[col_nums.xwidth] +
                             ds_dy * terms[col_nums.ywidth])
        return terms

    def update(self, fit_data, peak, delta, clamp=False):
        super().update(fit_data, peak, delta, clamp)
        z = self.z_calib.clip(peak.params[col_nums.z])
        peak.params[col_nums.z] = z
        peak.params[[col_nums.xwidth, col_nums.ywidth]] = \
            self.z_calib.exp_factor_from_z(z)
