# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

import numpy as np
import pandas as pd
import pytest

import multifit
from multifit import api, models
from multifit.config import FitConfig
from multifit.data import status
from multifit.fit import FitData

from conftest import gauss_image


centers = np.array([[12.3, 15.6], [27.8, 24.4]])
amplitudes = np.array([300., 200.])
sigmas = np.array([1.2, 1.5])


@pytest.fixture
def image():
    return gauss_image((40, 40), centers, amplitudes, sigmas, 10.)


@pytest.fixture
def guesses():
    return pd.DataFrame({"x": [12., 28.], "y": [16., 24.],
                         "signal": [250., 250.], "bg": [9., 11.],
                         "size": [1.3, 1.3]})


def check_results(res):
    np.testing.assert_equal(res["status"], status.converged)
    np.testing.assert_allclose(res[["x", "y"]], centers, atol=0.01)
    np.testing.assert_allclose(res["signal"], amplitudes, rtol=0.01)
    np.testing.assert_allclose(res["bg"], 10., atol=0.1)
    np.testing.assert_allclose(res["size"], sigmas, rtol=0.01)


class TestFit:
    def test_fit(self, image, guesses, engine):
        """api.fit"""
        res = multifit.fit(image, guesses, engine=engine)
        assert list(res.columns) == ["x", "y", "signal", "bg", "mass", "size",
                                     "status", "error", "iterations"]
        check_results(res)
        np.testing.assert_allclose(res["mass"],
                                   2 * np.pi * amplitudes * sigmas**2,
                                   rtol=0.03)
        assert np.all(res["iterations"] > 0)
        assert np.all(res["error"] >= 0)

    def test_original(self, image, guesses):
        """api.fit: undamped method"""
        res = multifit.fit(image, guesses, method="original")
        check_results(res)

    def test_2dfixed(self, image, guesses):
        """api.fit: fixed width"""
        guesses["size"] = sigmas
        res = multifit.fit(image, guesses, model="2dfixed")
        check_results(res)
        np.testing.assert_allclose(res["size"], sigmas)

    def test_3d(self, guesses):
        """api.fit: elliptic peaks"""
        sig = np.array([[1.2, 1.6], [1.5, 1.1]])
        img = gauss_image((40, 40), centers, amplitudes, sig, 10.)
        res = multifit.fit(img, guesses, model="3d")
        assert "size" not in res
        np.testing.assert_equal(res["status"], status.converged)
        np.testing.assert_allclose(res[["size_x", "size_y"]], sig, rtol=0.01)
        np.testing.assert_allclose(res[["x", "y"]], centers, atol=0.01)

    def test_size_xy(self, image, guesses):
        """api.fit: `size_x` and `size_y` initial guesses"""
        guesses = guesses.drop(columns="size")
        guesses["size_x"] = 1.3
        guesses["size_y"] = 1.3
        res = multifit.fit(image, guesses)
        check_results(res)

    def test_z(self, tmp_path):
        """api.fit: z model with calibration file"""
        zc = models.ZCalibration(models.ZCalibration.Axis(1.2, 0.3, 0.6, []),
                                 models.ZCalibration.Axis(1.2, -0.3, 0.6, []))
        zc_file = tmp_path / "zc.yaml"
        zc.save(zc_file)
        sig = zc.sigma_from_z([0.2]).T
        img = gauss_image((30, 30), [[15.2, 14.8]], 800., sig, 10.)
        guesses = pd.DataFrame({"x": [15.], "y": [15.], "signal": [700.],
                                "bg": [10.], "z": [0.]})
        res = multifit.fit(img, guesses, model="z", z_calib=str(zc_file))
        for c in ("z", "size_x", "size_y", "mass"):
            assert c in res
        assert res.loc[0, "status"] == status.converged
        assert res.loc[0, "z"] == pytest.approx(0.2, abs=0.01)
        np.testing.assert_allclose(res.loc[0, ["size_x", "size_y"]], sig[0],
                                   rtol=0.01)

    def test_spline(self, image, guesses):
        """api.fit: spline model"""
        y, x = np.mgrid[-6:7, -6:7]
        psf = np.exp(-(x**2 + y**2) / (2 * 1.2**2))
        img = gauss_image((40, 40), centers, amplitudes, 1.2, 10.)
        res = multifit.fit(img, guesses.drop(columns="size"), model="spline",
                           psf=psf)
        assert list(res.columns) == ["x", "y", "signal", "bg", "status",
                                     "error", "iterations"]
        np.testing.assert_equal(res["status"], status.converged)
        np.testing.assert_allclose(res[["x", "y"]], centers, atol=0.05)

    def test_finder(self, image, guesses):
        """api.fit: "finder" mode"""
        guesses = guesses.drop(columns=["signal", "bg"])
        res = multifit.fit(image, guesses, mode="finder",
                           background=np.full(image.shape, 10.))
        check_results(res)

    def test_converged_only(self, image, guesses):
        """api.fit: `converged_only` parameter"""
        edge = pd.DataFrame({"x": [1.], "y": [20.], "signal": [100.],
                             "bg": [10.], "size": [1.2]})
        guesses = pd.concat([guesses, edge], ignore_index=True)
        res = multifit.fit(image, guesses)
        assert len(res) == 3
        assert res.loc[2, "status"] == status.error
        res = multifit.fit(image, guesses, converged_only=True)
        assert len(res) == 2
        check_results(res)

    def test_config(self, image, guesses):
        """api.fit: `config` parameter"""
        # fitting area of peak 1 extends to x = 33
        res = multifit.fit(image, guesses, config=FitConfig(margin=7))
        assert res.loc[0, "status"] == status.converged
        assert res.loc[1, "status"] == status.error

    def test_no_size(self, image, guesses):
        """api.fit: missing size column"""
        with pytest.raises(ValueError):
            multifit.fit(image, guesses.drop(columns="size"))

    def test_empty(self, image):
        """api.fit: no peaks"""
        res = multifit.fit(image, pd.DataFrame({"x": [], "y": [],
                                                "size": []}))
        assert len(res) == 0
        assert "x" in res and "status" in res

    def test_max_iterations(self, image, guesses):
        """api.fit: `max_iterations` parameter"""
        res = multifit.fit(image, guesses, max_iterations=1)
        np.testing.assert_equal(res["status"], status.running)
        np.testing.assert_equal(res["iterations"], 1)


    def test_engine(self, image, guesses, monkeypatch):
        """api.fit: `engine` parameter and `config.engine`"""
        engines = []

        class RecordingFitData(FitData):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                engines.append(self.config.engine)

        monkeypatch.setattr(api, "FitData", RecordingFitData)
        numba_cfg = FitConfig(engine="numba")
        multifit.fit(image, guesses, config=numba_cfg, max_iterations=1)
        multifit.fit(image, guesses, config=numba_cfg, engine="python",
                     max_iterations=1)
        multifit.fit(image, guesses, engine="numba", max_iterations=1)
        multifit.fit(image, guesses, max_iterations=1)
        assert engines == ["numba", "python", "numba", "python"]
        assert numba_cfg.engine == "numba"
