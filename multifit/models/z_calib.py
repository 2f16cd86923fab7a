# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Astigmatic z calibration

With a cylindrical lens in the emission path, the PSF becomes elliptic
depending on the z position of the emitter. The widths in x and y direction
are described by calibration curves which are used by
:py:class:`gaussian.GaussianZ` to fit the z position directly.
"""
import collections
from pathlib import Path

import numpy as np
import yaml
from scipy.optimize import curve_fit


class _CalibrationDumper(yaml.SafeDumper):
    pass


def _yaml_dict_representer(dumper, data):
    return dumper.represent_dict(data.items())


def _yaml_list_representer(dumper, data):
    return dumper.represent_list(data)


_CalibrationDumper.add_representer(collections.OrderedDict,
                                   _yaml_dict_representer)
_CalibrationDumper.add_representer(tuple, _yaml_list_representer)


default_z_range = (-0.5, 0.5)


class ZCalibration(object):
    r"""Calibration curves for astigmatic z fitting

    The width of the PSF in either direction is

    .. math::
        w = w_0 \sqrt{1 + t^2 + a_1 t^3 + a_2 t^4 + \ldots},
        \quad t = \frac{z - c}{d}
    """
    _file_header = "# z calibration parameters\n"

    Axis = collections.namedtuple("Axis", ["w0", "c", "d", "a"])

    def __init__(self, x=None, y=None, z_range=default_z_range):
        """Parameters
        ----------
        x, y : Axis or None, optional
            Calibration curve parameters for both directions. If `None`, use
            a curve with constant width 1.
        z_range : tuple of float, optional
            Minimum and maximum valid z positions. Defaults to (-0.5, 0.5).
        """
        flat = self.Axis(1., 0., np.inf, np.array([]))
        self.x = flat if x is None else x
        self.y = flat if y is None else y
        self.z_range = tuple(z_range)

    @property
    def x(self):
        """x calibration curve parameters"""
        return self._axes[0]

    @x.setter
    def x(self, par):
        self._set_axis(0, par)

    @property
    def y(self):
        """y calibration curve parameters"""
        return self._axes[1]

    @y.setter
    def y(self, par):
        self._set_axis(1, par)

    def _set_axis(self, i, par):
        par = self.Axis(float(par.w0), float(par.c), float(par.d),
                        np.asarray(par.a, dtype=float))
        if not hasattr(self, "_axes"):
            self._axes = [None, None]
            self._polys = [None, None]
        self._axes[i] = par
        poly = np.polynomial.Polynomial(np.hstack(([1., 0., 1.], par.a)))
        self._polys[i] = (poly, poly.deriv())

    def _width_sq(self, z):
        z = np.asarray(z, dtype=float)
        ret = []
        for par, (poly, _) in zip(self._axes, self._polys):
            ret.append(par.w0**2 * poly((z - par.c) / par.d))
        return np.array(ret)

    def sigma_from_z(self, z):
        """Calculate x and y sigmas corresponding to z positions

        Parameters
        ----------
        z : array-like
            z positions

        Returns
        -------
        numpy.ndarray, shape=(2, len(z))
            First row contains sigmas in x direction, second row is for the
            y direction.
        """
        return np.sqrt(self._width_sq(z))

    def exp_factor_from_z(self, z):
        r"""Calculate the factor in the exponential of the Gaussian

        This is :math:`\frac{1}{2\sigma^2}` for both directions.

        Parameters
        ----------
        z : array-like
            z positions

        Returns
        -------
        numpy.ndarray, shape=(2, len(z))
            First row is for the x direction, second row for y.
        """
        return 1. / (2. * self._width_sq(z))

    def exp_factor_der(self, z, factor=None):
        r"""Derivative of the exponential factor with respect to z

        .. math:: \frac{ds}{dz} = -\frac{2 w_0^2 s^2}{d} p'(t)

        Parameters
        ----------
        z : array-like
            z positions
        factor : numpy.ndarray or None, optional
            Result of a :py:meth:`exp_factor_from_z` call for the same `z` to
            avoid calculating it again.

        Returns
        -------
        numpy.ndarray, shape=(2, len(z))
            First row is for the x direction, second row for y.
        """
        if factor is None:
            factor = self.exp_factor_from_z(z)
        z = np.asarray(z, dtype=float)
        ret = []
        for f, par, (_, der) in zip(factor, self._axes, self._polys):
            ret.append(-2. * par.w0**2 * f**2 * der((z - par.c) / par.d) /
                       par.d)
        return np.array(ret)

    def clip(self, z):
        """Clip z positions to the valid range"""
        return np.clip(z, *self.z_range)

    def save(self, file):
        """Save parameters to a yaml file

        Parameters
        ----------
        file : str or pathlib.Path or file-like object
            File name or file to write to
        """
        s = collections.OrderedDict()
        for name, par in zip(("x", "y"), self._axes):
            s[name] = collections.OrderedDict((
                ("w0", par.w0), ("c", par.c), ("d", par.d),
                ("a", par.a.tolist())))
        s["z range"] = self.z_range
        text = yaml.dump(s, Dumper=_CalibrationDumper)

        if isinstance(file, (str, Path)):
            with open(file, "w") as f:
                f.write(self._file_header)
                f.write(text)
        else:
            file.write(self._file_header)
            file.write(text)

    @classmethod
    def load(cls, file):
        """Load parameters from a yaml file

        Parameters
        ----------
        file : str or pathlib.Path or file-like object
            File name or file to read from

        Returns
        -------
        ZCalibration
            Class instance with parameters loaded from file
        """
        if isinstance(file, (str, Path)):
            with open(file, "r") as f:
                s = yaml.safe_load(f)
        else:
            s = yaml.safe_load(file)

        x, y = (cls.Axis(d["w0"], d["c"], d["d"], np.array(d["a"]))
                for d in (s["x"], s["y"]))
        return cls(x, y, s["z range"])

    @classmethod
    def calibrate(cls, loc, guess=Axis(1., 0., 1., np.ones(2)),
                  z_range=default_z_range):
        """Get calibration curves from emitters with known z positions

        Parameters
        ----------
        loc : pandas.DataFrame
            Localization data with `z`, `size_x`, and `size_y` columns.
        guess : Axis, optional
            Initial guess. The length of `guess.a` determines the number of
            polynomial coefficients. Defaults to ``Axis(1, 0, 1, [1, 1])``.
        z_range : tuple of float, optional
            Minimum and maximum valid z positions. Defaults to (-0.5, 0.5).

        Returns
        -------
        ZCalibration
            Fitted calibration
        """
        def curve(z, w0, c, d, *a):
            p = np.polynomial.Polynomial(np.hstack(([1., 0., 1.], a)))
            return w0**2 * p((z - c) / d)

        z = loc["z"].to_numpy(dtype=float)
        bounds = (np.array([0., -np.inf, 0.] + [-np.inf] * len(guess.a)),
                  np.inf)
        p0 = [guess.w0, guess.c, guess.d] + list(guess.a)

        axes = []
        for coord in ("x", "y"):
            sigma = loc["size_" + coord].to_numpy(dtype=float)
            p = curve_fit(curve, z, sigma**2, p0, bounds=bounds)[0]
            axes.append(cls.Axis(p[0], p[1], p[2], p[3:]))
        return cls(*axes, z_range=z_range)
