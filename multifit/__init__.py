# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Fitting of many, possibly overlapping peaks in a single image
=============================================================

Given an image and initial guesses for peak parameters (e.g. from a peak
finder), refine the parameters by maximizing the Poisson likelihood. All
peaks of an image are fitted simultaneously; each peak is updated with
Levenberg-Marquardt steps against the image minus all other peaks.

The peak shape is determined by a peak model (see :py:mod:`multifit.models`),
e.g. Gaussians with fixed or variable widths, Gaussians whose widths depend on
the z position via an astigmatic calibration, or a tabulated PSF.


Examples
--------

Fit Gaussians with variable widths:

>>> img = numpy.load("image.npy")
>>> guess = pandas.DataFrame({"x": [10.], "y": [9.], "signal": [400.],
...                           "bg": [8.], "size": [1.]})
>>> res = fit(img, guess, model="2d")

For more control, create a fitting session and iterate manually:

>>> with FitData(models.Gaussian2D(), numpy.zeros(img.shape)) as fd:
...     fd.new_image(img)
...     fd.new_peaks([[400., 10., 1., 9., 1., 8., 0.]])
...     iterate.fit(fd, max_iterations=50)
...     res = fd.to_dataframe()


Programming reference
---------------------

.. autofunction:: fit
.. autoclass:: FitData
    :members:
.. autofunction:: multifit.iterate.iterate_lm
.. autofunction:: multifit.iterate.iterate_original
.. autofunction:: multifit.iterate.fit
"""
from . import config, data, exceptions, iterate, models, solver  # noqa: F401
from .config import FitConfig  # noqa: F401
from .fit import FitData  # noqa: F401
from .api import fit  # noqa: F401
