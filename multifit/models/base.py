# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Peak model interface

A peak model knows how to render a single peak from its parameters and how
to calculate the derivatives of the rendered shape with respect to the
parameters. One model instance is used for a whole fitting session.
"""
import copy

import numpy as np


class PeakModel(object):
    """Base class for peak models

    Subclasses need to implement :py:meth:`aoi_half_size`,
    :py:meth:`calc_shape`, and :py:meth:`calc_derivatives` and set
    :py:attr:`fit_params`.

    Attributes
    ----------
    name : str
        Model name
    fit_params : tuple of tuple of int
        Free parameters. Each entry is a tuple of parameter indices which are
        updated by the same entry of the update vector (e.g. x and y width of
        a circular Gaussian).
    uses_width : bool
        Whether the width parameters are meaningful for this model. If
        `False`, they are not validated.
    """
    name = None
    fit_params = ()
    uses_width = True

    @property
    def n_fit(self):
        """Number of free parameters, i.e. size of the Jacobian"""
        return len(self.fit_params)

    def alloc_peak_data(self):
        """Create model specific data for a new peak

        Returns
        -------
        object
            Data which is stored with the peak
        """
        return None

    def free_peak_data(self, data):
        """Release model specific data of a peak

        Called exactly once for each object returned by
        :py:meth:`alloc_peak_data` or :py:meth:`copy_peak_data`.
        """
        pass

    def copy_peak_data(self, data):
        """Create an independent copy of model specific peak data"""
        return copy.deepcopy(data)

    def to_internal(self, params):
        """Convert parameters to internal units

        Parameters
        ----------
        params : numpy.ndarray, shape(n, 7)
            Peak parameters as passed by the user

        Returns
        -------
        numpy.ndarray
            Parameters as stored during fitting
        """
        return np.array(params, dtype=float)

    def to_external(self, params):
        """Inverse of :py:meth:`to_internal`"""
        return np.array(params, dtype=float)

    def aoi_half_size(self, peak):
        """Distance from the center to the edge of the fitting area

        Parameters
        ----------
        peak : store.Peak
            Peak data

        Returns
        -------
        tuple of float
            Half sizes in x and y direction. The fitting area will be
            ``2 * int(half_size) + 1`` pixels wide (subject to hysteresis).
        """
        raise NotImplementedError(
            "aoi_half_size() has to be implemented by the subclass")

    def calc_shape(self, fit_data, peak):
        """Render the peak over its fitting area

        Has to set ``peak.psf`` to an array of shape
        ``(peak.size_y, peak.size_x)`` (without background).

        Parameters
        ----------
        fit_data : fit.FitData
            Fitting session
        peak : store.Peak
            Peak data
        """
        raise NotImplementedError(
            "calc_shape() has to be implemented by the subclass")

    def calc_derivatives(self, fit_data, peak):
        """Derivatives of the rendered peak (including background)

        This is called after :py:meth:`calc_shape`.

        Parameters
        ----------
        fit_data : fit.FitData
            Fitting session
        peak : store.Peak
            Peak data

        Returns
        -------
        numpy.ndarray, shape(n_fit, peak.size_y, peak.size_x)
            Derivative with respect to each entry in :py:attr:`fit_params`
        """
        raise NotImplementedError(
            "calc_derivatives() has to be implemented by the subclass")

    def calc_jh(self, fit_data, peak):
        """Calculate Jacobian and Hessian of the fit error

        The error is the Poisson maximum likelihood deviance. The peak has to
        be added to the fit images.

        Parameters
        ----------
        fit_data : fit.FitData
            Fitting session
        peak : store.Peak
            Peak data

        Returns
        -------
        jacobian : numpy.ndarray, shape(n_fit,)
        hessian : numpy.ndarray, shape(n_fit, n_fit)
        """
        sel = fit_data.aoi(peak)
        fi = fit_data.model_values(sel)
        xi = fit_data.x_data[sel]
        jt = self.calc_derivatives(fit_data, peak)

        jacobian = np.sum(jt * (2. * (1. - xi / fi))[np.newaxis, ...],
                          axis=(1, 2))
        jt2 = jt * (2. * xi / fi**2)[np.newaxis, ...]
        hessian = np.einsum("kij,lij->kl", jt, jt2)
        return jacobian, hessian

    def update(self, fit_data, peak, delta, clamp=False):
        """Apply an update vector to the peak parameters

        Parameters
        ----------
        fit_data : fit.FitData
            Fitting session
        peak : store.Peak
            Peak data, will be modified
        delta : numpy.ndarray
            Update vector, one entry per entry of :py:attr:`fit_params`. The
            new parameters are the old ones minus `delta`.
        clamp : bool, optional
            Whether to clamp the updates. Defaults to False.
        """
        for d, targets in zip(delta, self.fit_params):
            for t in targets:
                peak.update_param(d, t, clamp)

    def check(self, peak):
        """Model specific validation of peak parameters

        Parameters
        ----------
        peak : store.Peak
            Peak data

        Returns
        -------
        bool
            `True` if parameters are valid.
        """
        return True

    def mass(self, params):
        """Integrated intensity of peaks

        Parameters
        ----------
        params : numpy.ndarray, shape(n, 7)
            Parameters in external units

        Returns
        -------
        numpy.ndarray or None
            Mass of each peak or `None` if there is no analytic expression
        """
        return None
