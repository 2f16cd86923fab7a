# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

import itertools

import numpy as np
import pytest

from multifit import models
from multifit.config import FitConfig
from multifit.fit import FitData


class CountingGaussian(models.Gaussian2D):
    """Gaussian model which keeps track of peak data ownership

    Releasing peak data which was not created (or was already released)
    raises a `KeyError`.
    """
    def __init__(self):
        super().__init__()
        self._tokens = itertools.count()
        self.live = set()
        self.n_alloc = 0
        self.n_copy = 0
        self.n_free = 0

    def _register(self, data):
        data["token"] = next(self._tokens)
        self.live.add(data["token"])
        return data

    def alloc_peak_data(self):
        self.n_alloc += 1
        return self._register(super().alloc_peak_data())

    def copy_peak_data(self, data):
        self.n_copy += 1
        return self._register(
            {k: v.copy() for k, v in data.items() if k != "token"})

    def free_peak_data(self, data):
        self.live.remove(data["token"])
        self.n_free += 1


def gauss_image(shape, centers, amplitudes, sigmas, background):
    """Noise-free image of Gaussian peaks

    `shape` is (height, width). `amplitudes` is a scalar or one value per
    peak. `sigmas` is a scalar, one value per peak, or one (x, y) pair per
    peak.
    """
    centers = np.array(centers, dtype=float, ndmin=2)
    amplitudes = np.broadcast_to(np.asarray(amplitudes, dtype=float),
                                 len(centers))
    sigmas = np.asarray(sigmas, dtype=float)
    if sigmas.ndim < 2:
        sigmas = np.broadcast_to(sigmas, len(centers))[:, np.newaxis]
    sigmas = np.broadcast_to(sigmas, (len(centers), 2))

    y, x = np.indices(shape)
    ret = np.full(shape, background, dtype=float)
    for (xc, yc), a, (sx, sy) in zip(centers, amplitudes, sigmas):
        ret += a * np.exp(-(x - xc)**2 / (2 * sx**2) -
                          (y - yc)**2 / (2 * sy**2))
    return ret


@pytest.fixture
def counting_model():
    return CountingGaussian()


@pytest.fixture(params=["python", "numba"])
def engine(request):
    return request.param


@pytest.fixture
def fit_data(engine):
    fd = FitData(models.Gaussian2D(), np.zeros((20, 30)),
                 config=FitConfig(engine=engine))
    fd.new_image(np.full((20, 30), 5.))
    yield fd
    fd.cleanup()
