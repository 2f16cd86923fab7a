# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Peak models

A peak model renders a peak from its parameters and provides the derivatives
needed for fitting. Available models are Gaussians with fixed width
(:py:class:`Gaussian2DFixed`), variable circular width
(:py:class:`Gaussian2D`), variable elliptic widths (:py:class:`Gaussian3D`),
widths determined by the z position (:py:class:`GaussianZ`), and tabulated
PSFs (:py:class:`SplineModel`).
"""
from pathlib import Path

import pandas as pd

from .base import PeakModel
from .gaussian import (Gaussian, Gaussian2DFixed, Gaussian2D, Gaussian3D,
                       GaussianZ)
from .spline import SplinePSF, SplineModel
from .z_calib import ZCalibration


def make_model(name, z_calib=None, psf=None, **kwargs):
    """Create a peak model by name

    Parameters
    ----------
    name : {"2dfixed", "2d", "3d", "z", "spline"} or PeakModel
        Model name. If a :py:class:`PeakModel` instance is passed, it is
        returned unchanged.
    z_calib : ZCalibration or str or pathlib.Path or pandas.DataFrame or None
        Only used (and required) for the "z" model. May be a calibration, a
        file to load it from, or calibration data (`z` vs. `size_x` and
        `size_y`).
    psf : SplinePSF or array-like or None
        Only used (and required) for the "spline" model. An array is passed
        to the :py:class:`SplinePSF` constructor.
    **kwargs
        Passed to the model's constructor

    Returns
    -------
    PeakModel
        Model instance
    """
    if isinstance(name, PeakModel):
        return name
    if name == "2dfixed":
        return Gaussian2DFixed(**kwargs)
    if name == "2d":
        return Gaussian2D(**kwargs)
    if name == "3d":
        return Gaussian3D(**kwargs)
    if name == "z":
        if z_calib is None:
            raise ValueError("Need to specify `z_calib`")
        if isinstance(z_calib, (str, Path)):
            z_calib = ZCalibration.load(z_calib)
        elif isinstance(z_calib, pd.DataFrame):
            z_calib = ZCalibration.calibrate(z_calib)
        return GaussianZ(z_calib, **kwargs)
    if name == "spline":
        if psf is None:
            raise ValueError("Need to specify `psf`")
        if not isinstance(psf, SplinePSF):
            psf = SplinePSF(psf)
        return SplineModel(psf, **kwargs)
    raise ValueError("Unknown model: " + str(name))
