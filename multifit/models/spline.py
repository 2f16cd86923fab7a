# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Peak model based on a tabulated PSF

The PSF is given as an image (2D) or a z stack of images (3D), e.g. from a
bead measurement. It is interpolated laterally with bicubic splines and
linearly between z planes. A :py:class:`SplinePSF` can be shared by any number
of :py:class:`SplineModel` instances and thus fitting sessions.
"""
import numpy as np
from scipy.interpolate import RectBivariateSpline

from ..data import col_nums
from .base import PeakModel


class SplinePSF(object):
    """Interpolated, tabulated PSF

    Attributes
    ----------
    upsample : float
        Number of PSF samples per pixel
    z_values : numpy.ndarray
        z position of each plane of the PSF stack
    half_size : tuple of float
        Extent of the tabulated PSF from its center in x and y direction (in
        pixels)
    """
    def __init__(self, psf, upsample=1, z_values=None, normalize=True):
        """Parameters
        ----------
        psf : array-like
            2D PSF image or 3D stack of PSF images (first axis is z). The
            center of each image is assumed to be the emitter position.
            Each image needs at least 4 samples in x and y direction.
        upsample : float, optional
            Number of PSF samples per image pixel. Defaults to 1.
        z_values : array-like or None, optional
            z position of each PSF plane. If `None`, use evenly spaced values
            between -0.5 and 0.5 (or 0 for a 2D PSF).
        normalize : bool, optional
            Scale the PSF so that its maximum is 1. Then the height parameter
            of a peak is its maximum intensity. Defaults to True.
        """
        psf = np.array(psf, dtype=float)
        if psf.ndim == 2:
            psf = psf[np.newaxis, ...]
        if psf.ndim != 3:
            raise ValueError("PSF needs to be a 2D or 3D array")
        if normalize:
            psf /= psf.max()

        if z_values is None:
            z_values = (np.zeros(1) if len(psf) == 1
                        else np.linspace(-0.5, 0.5, len(psf)))
        self.z_values = np.asarray(z_values, dtype=float)
        if self.z_values.shape != (len(psf),):
            raise ValueError("Need one z value per PSF plane")
        if np.any(np.diff(self.z_values) <= 0):
            raise ValueError("z values need to be increasing")

        self.upsample = upsample
        ny, nx = psf.shape[1:]
        self._ys = (np.arange(ny) - (ny - 1) / 2) / upsample
        self._xs = (np.arange(nx) - (nx - 1) / 2) / upsample
        self.half_size = (self._xs[-1], self._ys[-1])
        self._splines = [RectBivariateSpline(self._ys, self._xs, p)
                         for p in psf]

    @property
    def is_3d(self):
        """Whether the PSF depends on z"""
        return len(self._splines) > 1

    @property
    def z_range(self):
        """Minimum and maximum z position"""
        return self.z_values[0], self.z_values[-1]

    def _planes(self, z):
        """Indices of neighboring planes and interpolation weight"""
        if not self.is_3d:
            return 0, 0, 0.
        z = np.clip(z, *self.z_range)
        k = min(np.searchsorted(self.z_values, z, side="right") - 1,
                len(self.z_values) - 2)
        t = (z - self.z_values[k]) / (self.z_values[k+1] - self.z_values[k])
        return k, k + 1, t

    def _eval(self, spline, ys, xs, dy=0, dx=0):
        ret = spline(ys, xs, dx=dy, dy=dx, grid=True)
        # the PSF is zero outside of the tabulated area
        outside = ((np.abs(ys) > self.half_size[1])[:, np.newaxis] |
                   (np.abs(xs) > self.half_size[0])[np.newaxis, :])
        ret[outside] = 0.
        return ret

    def value(self, ys, xs, z=0.):
        """Evaluate the PSF on a grid

        Parameters
        ----------
        ys, xs : numpy.ndarray
            Distances from the emitter position in y and x direction
        z : float, optional
            z position. Defaults to 0.

        Returns
        -------
        numpy.ndarray, shape(len(ys), len(xs))
            PSF values
        """
        k0, k1, t = self._planes(z)
        ret = (1 - t) * self._eval(self._splines[k0], ys, xs)
        if t:
            ret += t * self._eval(self._splines[k1], ys, xs)
        return ret

    def derivatives(self, ys, xs, z=0.):
        """Evaluate the PSF and its derivatives on a grid

        Parameters
        ----------
        ys, xs : numpy.ndarray
            Distances from the emitter position in y and x direction
        z : float, optional
            z position. Defaults to 0.

        Returns
        -------
        value, d_dx, d_dy, d_dz : numpy.ndarray, shape(len(ys), len(xs))
            PSF values and derivatives with respect to the distances and z.
            `d_dz` is zero for 2D PSFs.
        """
        k0, k1, t = self._planes(z)
        ret = []
        for dy, dx in ((0, 0), (0, 1), (1, 0)):
            r = (1 - t) * self._eval(self._splines[k0], ys, xs, dy, dx)
            if t:
                r += t * self._eval(self._splines[k1], ys, xs, dy, dx)
            ret.append(r)
        if self.is_3d:
            dz = self.z_values[k1] - self.z_values[k0]
            ret.append((self._eval(self._splines[k1], ys, xs) -
                        self._eval(self._splines[k0], ys, xs)) / dz)
        else:
            ret.append(np.zeros_like(ret[0]))
        return tuple(ret)


class SplineModel(PeakModel):
    """Peak model using a :py:class:`SplinePSF`

    Fits height, center coordinates, background and, for 3D PSFs, the z
    position. Width parameters are not used.
    """
    name = "spline"
    uses_width = False

    def __init__(self, psf):
        """Parameters
        ----------
        psf : SplinePSF
            Tabulated PSF. It is not copied and may be shared between models.
        """
        self.psf = psf
        fp = [(col_nums.height,), (col_nums.x,), (col_nums.y,)]
        if psf.is_3d:
            fp.append((col_nums.z,))
        fp.append((col_nums.background,))
        self.fit_params = tuple(fp)

    def alloc_peak_data(self):
        # distances from the center and unit height shape
        return {"xs": np.zeros(0), "ys": np.zeros(0),
                "shape": np.zeros((0, 0))}

    def copy_peak_data(self, data):
        return {k: v.copy() for k, v in data.items()}

    def to_internal(self, params):
        ret = np.array(params, dtype=float)
        ret[:, col_nums.z] = np.clip(ret[:, col_nums.z], *self.psf.z_range)
        return ret

    def aoi_half_size(self, peak):
        return self.psf.half_size

    def _distances(self, fit_data, peak):
        d = peak.model_data
        x = peak.params[col_nums.x] - fit_data.xoff
        y = peak.params[col_nums.y] - fit_data.yoff
        d["xs"] = np.arange(peak.xi, peak.xi + peak.size_x) - x
        d["ys"] = np.arange(peak.yi, peak.yi + peak.size_y) - y
        return d["ys"], d["xs"], peak.params[col_nums.z] - fit_data.zoff

    def calc_shape(self, fit_data, peak):
        ys, xs, z = self._distances(fit_data, peak)
        shape = self.psf.value(ys, xs, z)
        peak.model_data["shape"] = shape
        peak.psf = peak.params[col_nums.height] * shape

    def calc_derivatives(self, fit_data, peak):
        ys, xs, z = self._distances(fit_data, peak)
        h = peak.params[col_nums.height]
        val, d_dx, d_dy, d_dz = self.psf.derivatives(ys, xs, z)
        # distances decrease when the center coordinates increase
        terms = {col_nums.height: val,
                 col_nums.x: -h * d_dx,
                 col_nums.y: -h * d_dy,
                 col_nums.z: h * d_dz,
                 col_nums.background: np.ones_like(val)}
        return np.array([terms[t[0]] for t in self.fit_params])

    def update(self, fit_data, peak, delta, clamp=False):
        super().update(fit_data, peak, delta, clamp)
        peak.params[col_nums.z] = np.clip(peak.params[col_nums.z],
                                          *self.psf.z_range)
