# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""High level API for fitting peaks in images

Provides :py:func:`fit`, which refines initial guesses (e.g. from a peak
finder) for a single image and returns the results as a
:py:class:`pandas.DataFrame`.
"""
import numpy as np
import pandas as pd

from . import iterate
from .config import FitConfig, use_defaults
from .data import col_nums, num_peak_params, status
from .fit import FitData
from .models import make_model


def _initial_params(peaks, model):
    """Create parameter array from initial guesses"""
    params = np.zeros((len(peaks), num_peak_params))
    params[:, col_nums.x] = peaks["x"]
    params[:, col_nums.y] = peaks["y"]
    if "signal" in peaks:
        params[:, col_nums.height] = peaks["signal"]
    if "bg" in peaks:
        params[:, col_nums.background] = peaks["bg"]
    if "z" in peaks:
        params[:, col_nums.z] = peaks["z"]

    if model.uses_width:
        if "size_x" in peaks and "size_y" in peaks:
            params[:, col_nums.xwidth] = peaks["size_x"]
            params[:, col_nums.ywidth] = peaks["size_y"]
        elif "size" in peaks:
            params[:, col_nums.xwidth] = peaks["size"]
            params[:, col_nums.ywidth] = peaks["size"]
        elif model.name != "z":
            raise ValueError("Initial guesses need a `size` column or "
                             "`size_x` and `size_y` columns")
    return params


def _result_frame(fit_data, model):
    """Assemble fit results into a DataFrame"""
    res = fit_data.get_results()
    df = pd.DataFrame(res[:, [col_nums.x, col_nums.y, col_nums.height,
                              col_nums.background]],
                      columns=["x", "y", "signal", "bg"])
    if model.name == "z" or (model.name == "spline" and model.psf.is_3d):
        df["z"] = res[:, col_nums.z]

    mass = model.mass(res[:, :num_peak_params])
    if mass is not None:
        df["mass"] = mass

    if model.uses_width:
        if model.name in ("3d", "z"):
            df["size_x"] = res[:, col_nums.xwidth]
            df["size_y"] = res[:, col_nums.ywidth]
        else:
            df["size"] = res[:, col_nums.xwidth]

    df["status"] = res[:, col_nums.status].astype(int)
    df["error"] = res[:, col_nums.error]
    df["iterations"] = fit_data.get_peak_property("iterations")
    return df


@use_defaults
def fit(image, peaks, model="2d", z_calib=None, psf=None, scmos_term=None,
        background=None, mode="fit", method="lm", config=None,
        converged_only=False, tolerance=None, max_iterations=None,
        minimum_height=None, engine=None):
    """Fit peaks in an image

    Parameters
    ----------
    image : array-like
        Image data
    peaks : pandas.DataFrame
        Initial guesses. Required columns are "x" and "y". Additionally,
        "signal" (height), "bg" (background), "size" or "size_x" and "size_y"
        (Gaussian sigma), and "z" are used if present.
    model : {"2dfixed", "2d", "3d", "z", "spline"} or models.PeakModel
        Peak model, see :py:func:`models.make_model`. Defaults to "2d".
    z_calib : models.ZCalibration or str or pandas.DataFrame or None
        Only necessary if the `model` is "z". One may pass a
        :py:class:`models.ZCalibration` instance or a filename to load the
        calibration from or a :py:class:`pandas.DataFrame` with calibration
        data (`z` vs. `size_x` and `size_y`).
    psf : models.SplinePSF or array-like or None
        Only necessary if the `model` is "spline".
    scmos_term : array-like or None, optional
        Per-pixel sCMOS calibration term (variance / gain**2). If `None`,
        use zeros.
    background : array-like or None, optional
        Background estimate, only used if `mode` is "finder".
    mode : {"fit", "finder"}, optional
        In "fit" mode, initial heights and backgrounds are used as given. In
        "finder" mode, they are estimated from the image. Defaults to "fit".
    method : {"lm", "original"}, optional
        Levenberg-Marquardt or undamped fitting. Defaults to "lm".
    config : config.FitConfig or None, optional
        Fitting constants. If `None`, use the defaults.
    converged_only : bool, optional
        Only return peaks which converged. Defaults to False.

    Returns
    -------
    pandas.DataFrame
        Columns are x, y, signal (height), bg, (if applicable) z, mass, size
        or size_x and size_y, status, error, iterations.

    Other parameters
    ----------------
    tolerance : float or None, optional
        Fit tolerance. If `None`, use the value from :py:data:`config.rc`.
    max_iterations : int or None, optional
        Maximum number of iterations. If `None`, use the value from
        :py:data:`config.rc`.
    minimum_height : float or None, optional
        Minimum valid peak height. If `None`, use the value from
        :py:data:`config.rc`.
    engine : {"python", "numba"} or None, optional
        Calculation engine. This overrides `config.engine`. If `None`, use
        `config.engine` or, if no `config` was passed, the
        :py:class:`FitConfig` default.
    """
    model = make_model(model, z_calib=z_calib, psf=psf)
    image = np.asarray(image, dtype=float)
    if scmos_term is None:
        scmos_term = np.zeros(image.shape)

    if config is None:
        config = FitConfig() if engine is None else FitConfig(engine=engine)
    elif engine is not None and engine != config.engine:
        config = config.replace(engine=engine)

    with FitData(model, scmos_term, tolerance, config, minimum_height) as fd:
        fd.new_image(image)
        if background is not None:
            fd.new_background(background)
        fd.new_peaks(_initial_params(peaks, model), mode)
        iterate.fit(fd, max_iterations, method)
        ret = _result_frame(fd, model)

    if converged_only:
        ret = ret[ret["status"] == status.converged].reset_index(drop=True)
    return ret

