# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

import io

import numpy as np
import pandas as pd
import pytest

from multifit import models
from multifit.data import col_nums
from multifit.fit import FitData


z_calib = models.ZCalibration(
    models.ZCalibration.Axis(1.2, 0.3, 0.6, [0.1]),
    models.ZCalibration.Axis(1.1, -0.3, 0.5, [-0.05, 0.02]),
    z_range=(-0.6, 0.6))


def numerical_derivatives(fit_data, peak, eps=1e-6):
    """Central differences of the rendered peak (including background)"""
    model = fit_data.model
    ret = []
    for k in range(model.n_fit):
        rendered = []
        for s in (1, -1):
            q = fit_data.copy_peak(peak)
            delta = np.zeros(model.n_fit)
            # parameters are updated by subtracting delta
            delta[k] = -s * eps
            model.update(fit_data, q, delta)
            model.calc_shape(fit_data, q)
            rendered.append(q.psf + q.params[col_nums.background])
            fit_data.free_peak(q)
        ret.append((rendered[0] - rendered[1]) / (2 * eps))
    return np.array(ret)


@pytest.mark.parametrize("model", [models.Gaussian2DFixed(),
                                   models.Gaussian2D(),
                                   models.Gaussian3D(),
                                   models.GaussianZ(z_calib)],
                         ids=lambda m: m.name)
def test_gaussian_derivatives(model):
    """models.Gaussian.calc_derivatives"""
    fd = FitData(model, np.zeros((20, 20)))
    fd.new_peaks([[300., 10.3, 1.1, 9.6, 1.4, 5., 0.1]])
    p = fd.get_peak(0)
    model.calc_shape(fd, p)
    der = model.calc_derivatives(fd, p)
    assert der.shape == (model.n_fit, p.size_y, p.size_x)
    np.testing.assert_allclose(der, numerical_derivatives(fd, p),
                               rtol=1e-5, atol=1e-4)
    fd.free_peak(p)
    fd.cleanup()


def test_calc_jh():
    """models.PeakModel.calc_jh"""
    model = models.Gaussian2DFixed()
    img = np.full((20, 20), 7.)
    fd = FitData(model, np.zeros((20, 20)))
    fd.new_image(img)
    fd.new_peaks([[300., 10.3, 1.1, 9.6, 1.4, 5., 0.]])
    p = fd.get_peak(0)
    jac, hess = model.calc_jh(fd, p)

    sel = fd.aoi(p)
    fi = p.psf + 5.
    der = model.calc_derivatives(fd, p)
    exp_j = [np.sum(2 * (1 - img[sel] / fi) * d) for d in der]
    np.testing.assert_allclose(jac, exp_j)
    w = 2 * img[sel] / fi**2
    exp_h = [[np.sum(w * d1 * d2) for d2 in der] for d1 in der]
    np.testing.assert_allclose(hess, exp_h)
    np.testing.assert_allclose(hess, hess.T)
    fd.free_peak(p)
    fd.cleanup()


class TestGaussian:
    def test_units(self):
        """models.Gaussian: internal and external parameters"""
        m = models.Gaussian2D()
        ext = np.array([[100., 1., 2., 3., 0.5, 6., 7.],
                        [100., 1., -1., 3., 0., 6., 7.]])
        internal = m.to_internal(ext)
        np.testing.assert_allclose(internal[0, [col_nums.xwidth,
                                                col_nums.ywidth]],
                                   [1 / 8, 2.])
        np.testing.assert_equal(internal[1, [col_nums.xwidth,
                                             col_nums.ywidth]], [-1., -1.])
        back = m.to_external(internal)
        np.testing.assert_allclose(back[0], ext[0])
        assert np.all(np.isnan(back[1, [col_nums.xwidth, col_nums.ywidth]]))
        np.testing.assert_equal(back[:, col_nums.x], 1.)

    def test_aoi_half_size(self):
        """models.Gaussian.aoi_half_size"""
        m = models.Gaussian3D(max_half_size=5)
        fd = FitData(m, np.zeros((30, 30)))
        fd.new_peaks([[100., 15., 1., 15., 2., 6., 0.]])
        p = fd.get_peak(0)
        assert m.aoi_half_size(p) == pytest.approx((4., 5.))
        p.params[col_nums.xwidth] = -1.
        assert m.aoi_half_size(p) == pytest.approx((1., 5.))
        fd.free_peak(p)
        fd.cleanup()

    def test_shape(self):
        """models.Gaussian.calc_shape"""
        m = models.Gaussian3D()
        fd = FitData(m, np.zeros((20, 30)), xoff=1., yoff=-0.5)
        fd.new_peaks([[100., 13.2, 1., 8.1, 1.5, 6., 0.]])
        p = fd.get_peak(0)
        y, x = np.mgrid[p.yi:p.yi+p.size_y, p.xi:p.xi+p.size_x]
        exp = 100. * np.exp(-(x - 12.2)**2 / 2 - (y - 8.6)**2 / (2 * 1.5**2))
        np.testing.assert_allclose(p.psf, exp)
        fd.free_peak(p)
        fd.cleanup()

    def test_mass(self):
        """models.Gaussian.mass"""
        m = models.Gaussian3D()
        np.testing.assert_allclose(
            m.mass(np.array([[100., 1., 2., 3., 0.5, 6., 7.]])),
            [2 * np.pi * 100.])

    def test_z_update(self):
        """models.GaussianZ.update: widths follow z"""
        m = models.GaussianZ(z_calib)
        fd = FitData(m, np.zeros((20, 20)))
        fd.new_peaks([[100., 10., 0., 10., 0., 6., 0.]])
        p = fd.get_peak(0)
        np.testing.assert_allclose(
            p.params[[col_nums.xwidth, col_nums.ywidth]],
            z_calib.exp_factor_from_z(0.))
        m.update(fd, p, np.array([0., 0., 0., -0.2, 0.]))
        assert p.params[col_nums.z] == pytest.approx(0.2)
        np.testing.assert_allclose(
            p.params[[col_nums.xwidth, col_nums.ywidth]],
            z_calib.exp_factor_from_z(0.2))
        # z is clipped to the valid range
        m.update(fd, p, np.array([0., 0., 0., -2., 0.]))
        assert p.params[col_nums.z] == pytest.approx(0.6)
        fd.free_peak(p)
        fd.cleanup()


class TestZCalibration:
    def test_sigma_from_z(self):
        """models.ZCalibration.sigma_from_z"""
        z = np.array([-0.2, 0.1, 0.4])
        t = (z - 0.3) / 0.6
        exp_x = 1.2 * np.sqrt(1 + t**2 + 0.1 * t**3)
        t = (z + 0.3) / 0.5
        exp_y = 1.1 * np.sqrt(1 + t**2 - 0.05 * t**3 + 0.02 * t**4)
        np.testing.assert_allclose(z_calib.sigma_from_z(z), [exp_x, exp_y])
        np.testing.assert_allclose(z_calib.exp_factor_from_z(z),
                                   1 / (2 * np.array([exp_x, exp_y])**2))

    def test_exp_factor_der(self):
        """models.ZCalibration.exp_factor_der"""
        z = np.linspace(-0.5, 0.5, 11)
        eps = 1e-7
        num = (z_calib.exp_factor_from_z(z + eps) -
               z_calib.exp_factor_from_z(z - eps)) / (2 * eps)
        np.testing.assert_allclose(z_calib.exp_factor_der(z), num, rtol=1e-5,
                                   atol=1e-7)
        f = z_calib.exp_factor_from_z(z)
        np.testing.assert_allclose(z_calib.exp_factor_der(z, f), num,
                                   rtol=1e-5, atol=1e-7)

    def test_default(self):
        """models.ZCalibration: default constant width"""
        zc = models.ZCalibration()
        np.testing.assert_allclose(zc.sigma_from_z([-0.3, 0.3]), 1.)
        np.testing.assert_allclose(zc.exp_factor_der([-0.3, 0.3]), 0.)

    def test_save_load(self, tmp_path):
        """models.ZCalibration: save and load"""
        buf = io.StringIO()
        z_calib.save(buf)
        buf.seek(0)
        loaded = models.ZCalibration.load(buf)
        for ax in ("x", "y"):
            a = getattr(z_calib, ax)
            b = getattr(loaded, ax)
            assert (a.w0, a.c, a.d) == (b.w0, b.c, b.d)
            np.testing.assert_allclose(a.a, b.a)
        assert loaded.z_range == (-0.6, 0.6)

        p = tmp_path / "z.yaml"
        z_calib.save(p)
        loaded = models.ZCalibration.load(str(p))
        np.testing.assert_allclose(loaded.sigma_from_z([0.1]),
                                   z_calib.sigma_from_z([0.1]))

    def test_calibrate(self):
        """models.ZCalibration.calibrate"""
        z = np.linspace(-0.5, 0.5, 41)
        sx, sy = z_calib.sigma_from_z(z)
        df = pd.DataFrame({"z": z, "size_x": sx, "size_y": sy})
        zc = models.ZCalibration.calibrate(
            df, models.ZCalibration.Axis(1., 0., 1., np.zeros(2)))
        np.testing.assert_allclose(zc.sigma_from_z(z), [sx, sy], rtol=1e-3)
        assert zc.z_range == (-0.5, 0.5)


class TestMakeModel:
    def test_gaussians(self):
        """models.make_model: Gaussian models"""
        assert isinstance(models.make_model("2dfixed"),
                          models.Gaussian2DFixed)
        assert isinstance(models.make_model("2d"), models.Gaussian2D)
        m = models.make_model("3d", max_half_size=3)
        assert isinstance(m, models.Gaussian3D)
        assert m.max_half_size == 3
        m = models.Gaussian2D()
        assert models.make_model(m) is m

    def test_z(self, tmp_path):
        """models.make_model: z model"""
        m = models.make_model("z", z_calib=z_calib)
        assert isinstance(m, models.GaussianZ)
        assert m.z_calib is z_calib

        p = tmp_path / "z.yaml"
        z_calib.save(p)
        m = models.make_model("z", z_calib=p)
        np.testing.assert_allclose(m.z_calib.sigma_from_z([0.]),
                                   z_calib.sigma_from_z([0.]))
        with pytest.raises(ValueError):
            models.make_model("z")

    def test_spline(self):
        """models.make_model: spline model"""
        y, x = np.mgrid[-5:6, -5:6]
        psf = np.exp(-(x**2 + y**2) / 2)
        m = models.make_model("spline", psf=psf)
        assert isinstance(m, models.SplineModel)
        spsf = models.SplinePSF(psf)
        assert models.make_model("spline", psf=spsf).psf is spsf
        with pytest.raises(ValueError):
            models.make_model("spline")

    def test_unknown(self):
        """models.make_model: unknown model"""
        with pytest.raises(ValueError):
            models.make_model("4d")
