# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Fitting constants and default function parameters
=================================================

All tunable constants of the fitting engine (hysteresis of the fitting area,
Levenberg-Marquardt damping, growth of the peak storage, ...) are grouped in
a :py:class:`FitConfig` instance, which is passed to
:py:class:`multifit.fit.FitData` when a fitting session is created. It can be
saved to and loaded from YAML files.

Default values of high level function arguments (e.g. the fit tolerance) are
taken from :py:attr:`rc` by means of the :py:func:`use_defaults` decorator.


Examples
--------

Create a configuration with a stronger hysteresis and save it:

>>> cfg = FitConfig(hysteresis=0.8)
>>> cfg.save("fit_config.yaml")
>>> FitConfig.load("fit_config.yaml") == cfg
True

Define a function that will take its tolerance from :py:attr:`rc`:

>>> @use_defaults
... def f(tolerance=None):
...     return tolerance
>>> f()
1e-06


Programming reference
---------------------

.. autoclass:: FitConfig
    :members:
.. autofunction:: use_defaults
.. autodata:: rc
"""
import collections
import functools
import inspect
from pathlib import Path

import numpy as np
import yaml

from .data import num_peak_params


rc = dict(tolerance=1e-6,
          max_iterations=200,
          minimum_height=0.)
"""Global config dictionary"""


engines = ("python", "numba")


class _ConfigDumper(yaml.SafeDumper):
    pass


def _yaml_dict_representer(dumper, data):
    return dumper.represent_dict(data.items())


_ConfigDumper.add_representer(collections.OrderedDict, _yaml_dict_representer)


class FitConfig(object):
    """Constants controlling the fitting engine

    Attributes
    ----------
    hysteresis : float
        In order to move the fitting area (AOI) of a peak or to change its
        size, the new value must differ from the old value by at least this
        much. Values <= 0.5 mean no hysteresis. Defaults to 0.6.
    lambda_start : float
        Initial Levenberg-Marquardt damping factor. Defaults to 1.
    lambda_down : float
        Multiplier for decreasing lambda after a successful update.
        Defaults to 0.75.
    lambda_up : float
        Multiplier for increasing lambda after a failed update. Defaults to 4.
    lambda_min : float
        Minimum lambda value. Defaults to 1e-3.
    lambda_max : float
        Maximum lambda value. If this is reached, the peak is considered lost.
        Defaults to 1e20.
    chunk_size : int
        Peak storage grows in units of this many peaks. Defaults to 500.
    n_fitting : int
        Number of parameters per peak. Only 7 is supported.
    use_clamp : bool
        Whether to clamp the updates of the Levenberg-Marquardt fitter. The
        original (undamped) fitter always clamps. Defaults to False.
    clamp_start : numpy.ndarray
        Initial clamp values, one for each parameter.
    margin : int
        Width of the image border (in pixels) which fitting areas may not
        extend into. Defaults to 0.
    converge_count : int
        Number of consecutive iterations in which the error must change less
        than the tolerance for a peak to be considered converged. Defaults
        to 1.
    engine : {"python", "numba"}
        Which engine to use for solving the normal equations and adding
        peaks to the fit images. Defaults to "python".
    """
    _file_header = "# multifit configuration\n"

    _defaults = collections.OrderedDict((
        ("hysteresis", 0.6),
        ("lambda_start", 1.),
        ("lambda_down", 0.75),
        ("lambda_up", 4.),
        ("lambda_min", 1e-3),
        ("lambda_max", 1e20),
        ("chunk_size", 500),
        ("n_fitting", num_peak_params),
        ("use_clamp", False),
        ("clamp_start", (1000., 1., 0.3, 1., 0.3, 100., 0.1)),
        ("margin", 0),
        ("converge_count", 1),
        ("engine", "python"),
    ))

    def __init__(self, **kwargs):
        """Parameters
        ----------
        **kwargs
            Values for any of the attributes. Attributes not given are set to
            their default values.

        Raises
        ------
        ValueError
            Unknown attribute names or invalid values
        """
        unknown = set(kwargs) - set(self._defaults)
        if unknown:
            raise ValueError("Unknown config parameter(s): {}".format(
                ", ".join(sorted(unknown))))
        for k, v in self._defaults.items():
            setattr(self, k, kwargs.get(k, v))

        self.clamp_start = np.array(self.clamp_start, dtype=float)
        self.chunk_size = int(self.chunk_size)
        self.margin = int(self.margin)
        self.converge_count = int(self.converge_count)
        self._validate()

    def _validate(self):
        if self.n_fitting != num_peak_params:
            raise ValueError("n_fitting has to be {}".format(num_peak_params))
        if self.clamp_start.shape != (self.n_fitting,):
            raise ValueError("clamp_start needs {} entries".format(
                self.n_fitting))
        if np.any(self.clamp_start <= 0):
            raise ValueError("clamp_start values have to be positive")
        if not 0 < self.lambda_min <= self.lambda_start <= self.lambda_max:
            raise ValueError("Need 0 < lambda_min <= lambda_start <= "
                             "lambda_max")
        if not 0 < self.lambda_down < 1:
            raise ValueError("lambda_down has to be in (0, 1)")
        if self.lambda_up <= 1:
            raise ValueError("lambda_up has to be greater than 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size has to be positive")
        if self.margin < 0:
            raise ValueError("margin may not be negative")
        if self.converge_count < 1:
            raise ValueError("converge_count has to be at least 1")
        if self.engine not in engines:
            raise ValueError("Unknown engine: " + str(self.engine))

    def to_dict(self):
        """Get all parameters as an ordered dict of plain Python types"""
        ret = collections.OrderedDict()
        for k in self._defaults:
            v = getattr(self, k)
            if isinstance(v, np.ndarray):
                v = v.tolist()
            ret[k] = v
        return ret

    def replace(self, **kwargs):
        """Create a copy with some parameters replaced

        Parameters
        ----------
        **kwargs
            New values

        Returns
        -------
        FitConfig
            Modified copy
        """
        d = self.to_dict()
        d.update(kwargs)
        return type(self)(**d)

    def __eq__(self, other):
        if not isinstance(other, FitConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        args = ", ".join("{}={!r}".format(k, v)
                         for k, v in self.to_dict().items())
        return "FitConfig({})".format(args)

    def save(self, file):
        """Save parameters to a yaml file

        Parameters
        ----------
        file : str or pathlib.Path or file-like object
            File name or file to write to
        """
        s = yaml.dump(self.to_dict(), Dumper=_ConfigDumper)
        if isinstance(file, (str, Path)):
            with open(file, "w") as f:
                f.write(self._file_header)
                f.write(s)
        else:
            file.write(self._file_header)
            file.write(s)

    @classmethod
    def load(cls, file):
        """Load parameters from a yaml file

        Parameters not present in the file are set to their defaults.

        Parameters
        ----------
        file : str or pathlib.Path or file-like object
            File name or file to read from

        Returns
        -------
        FitConfig
            Class instance with parameters loaded from file
        """
        if isinstance(file, (str, Path)):
            with open(file, "r") as f:
                s = yaml.safe_load(f)
        else:
            s = yaml.safe_load(file)
        return cls(**(s or {}))


def use_defaults(func):
    """Decorator to apply default values to functions

    If any function argument whose name is a key in :py:attr:`rc` is `None`,
    set its value to what is specified in :py:attr:`rc`.

    Parameters
    ----------
    func : function
        Function to be decorated

    Returns
    -------
    function
        Modified function

    Examples
    --------
    >>> @use_defaults
    ... def f(max_iterations=None):
    ...     return max_iterations
    >>> f()
    200
    >>> f(20)
    20
    >>> config.rc["max_iterations"] = 50
    >>> f()
    50
    """
    sig = inspect.signature(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        ba = sig.bind(*args, **kwargs)
        ba.apply_defaults()
        for name, value in ba.arguments.items():
            if value is None and name in rc:
                ba.arguments[name] = rc[name]
        return func(*ba.args, **ba.kwargs)

    wrapper.__signature__ = sig
    return wrapper
