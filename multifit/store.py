# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Storage of peak data

Peaks are kept in a :py:class:`PeakStore`, which holds one array per field
(with one entry per peak) and grows in chunks. Fitting routines work on
:py:class:`Peak` objects, which are copies of single entries that are written
back once an update has been accepted.
"""
import logging

import numpy as np

from .data import num_peak_params, status
from .exceptions import StorageError


_logger = logging.getLogger(__name__)


class Peak(object):
    """Working copy of a single peak

    Attributes
    ----------
    index : int
        Peak id. This does not change when peaks are removed from the store.
    added : int
        1 if the peak's contribution is currently part of the fit images,
        0 otherwise
    iterations : int
        Number of fitting iterations
    status : int
        Fit status, see :py:data:`data.status`
    xi, yi : int
        Location of the fitting area (AOI) in x and y (first pixel)
    size_x, size_y : int
        Size of the AOI in pixels. 0 if the AOI has not been calculated yet.
    n_stable : int
        Number of consecutive iterations in which the error did not change
        more than the tolerance
    error : float
        Current fit error
    lambda_ : float
        Levenberg-Marquardt damping factor
    sign : numpy.ndarray
        Sign of the previous update of each parameter (only used when
        clamping)
    clamp : numpy.ndarray
        Clamp value for each parameter to suppress oscillations
    params : numpy.ndarray
        Parameters (height, x, xwidth, y, ywidth, background, z) in the
        model's internal units
    psf : numpy.ndarray
        Last rendered shape (without background) over the AOI
    model_data
        Peak model specific data. Created, copied and freed only by the peak
        model.
    """
    int_fields = ("index", "added", "iterations", "status", "xi", "yi",
                  "size_x", "size_y", "n_stable")
    float_fields = ("error", "lambda_")
    vector_fields = ("sign", "clamp", "params")

    def __init__(self, n_params=num_peak_params):
        for f in self.int_fields:
            setattr(self, f, 0)
        for f in self.float_fields:
            setattr(self, f, 0.)
        self.sign = np.zeros(n_params, dtype=int)
        self.clamp = np.ones(n_params)
        self.params = np.zeros(n_params)
        self.psf = np.zeros((0, 0))
        self.model_data = None

    def copy(self, model):
        """Deep copy

        Parameters
        ----------
        model : models.PeakModel
            Peak model, which is used to copy :py:attr:`model_data`

        Returns
        -------
        Peak
            Copy of self. The caller owns the copy's model data.
        """
        ret = Peak(len(self.params))
        for f in self.int_fields + self.float_fields:
            setattr(ret, f, getattr(self, f))
        for f in self.vector_fields:
            getattr(ret, f)[:] = getattr(self, f)
        ret.psf = self.psf.copy()
        ret.model_data = model.copy_peak_data(self.model_data)
        return ret

    def update_param(self, delta, index, clamp=False):
        """Update a single parameter

        The new value is ``params[index] - delta``. If `clamp` is `True`,
        the update is damped according to the :py:attr:`clamp` value and the
        clamp value is halved if the sign of the update changed compared to
        the previous one (i.e., if the parameter oscillates).

        Parameters
        ----------
        delta : float
            Update value
        index : int
            Parameter index
        clamp : bool, optional
            Whether to clamp the update. Defaults to False.
        """
        if clamp:
            if self.sign[index] * delta < 0:
                self.clamp[index] *= 0.5
            self.sign[index] = 1 if delta > 0 else -1
            delta = delta / (1. + abs(delta) / self.clamp[index])
        self.params[index] -= delta


class PeakStore(object):
    """Growable storage of peak data

    Each field of :py:class:`Peak` is stored in an array whose first axis
    runs over peaks. Capacity grows in multiples of `chunk_size` and is never
    reduced, so indices of stored peaks remain valid when more peaks are
    added.
    """
    def __init__(self, n_params=num_peak_params, chunk_size=500):
        """Parameters
        ----------
        n_params : int, optional
            Number of parameters per peak. Defaults to 7.
        chunk_size : int, optional
            Storage grows in units of this many peaks. Defaults to 500.
        """
        self.n_params = n_params
        self.chunk_size = chunk_size
        self._n = 0
        self._capacity = 0
        self._arrays = {}
        for f in Peak.int_fields:
            self._arrays[f] = np.zeros(0, dtype=int)
        for f in Peak.float_fields:
            self._arrays[f] = np.zeros(0)
        self._arrays["sign"] = np.zeros((0, n_params), dtype=int)
        self._arrays["clamp"] = np.zeros((0, n_params))
        self._arrays["params"] = np.zeros((0, n_params))
        self._arrays["psf"] = np.empty(0, dtype=object)
        self._arrays["model_data"] = np.empty(0, dtype=object)

    def __len__(self):
        return self._n

    @property
    def capacity(self):
        """Number of peaks that can be stored without growing"""
        return self._capacity

    def _reserve(self, capacity):
        """Grow storage to hold at least `capacity` peaks

        Raises
        ------
        StorageError
            Allocation failed
        """
        if capacity <= self._capacity:
            return
        n_chunks = -(-capacity // self.chunk_size)
        new_cap = n_chunks * self.chunk_size
        try:
            new_arrays = {}
            for k, a in self._arrays.items():
                new = np.zeros((new_cap,) + a.shape[1:], dtype=a.dtype)
                new[:self._n] = a[:self._n]
                new_arrays[k] = new
        except MemoryError as e:
            _logger.error("Failed to grow peak storage to %d peaks", new_cap)
            raise StorageError(new_cap) from e
        _logger.debug("Grew peak storage from %d to %d peaks",
                      self._capacity, new_cap)
        self._arrays = new_arrays
        self._capacity = new_cap

    def grow(self, n):
        """Append `n` empty entries

        Parameters
        ----------
        n : int
            Number of entries

        Returns
        -------
        range
            Indices of the new entries
        """
        start = self._n
        self._reserve(start + n)
        for a in self._arrays.values():
            if a.dtype == object:
                a[start:start+n] = None
            else:
                a[start:start+n] = 0
        self._n += n
        return range(start, start + n)

    def _check_index(self, index):
        if not 0 <= index < self._n:
            raise IndexError("Peak index {} out of range".format(index))

    def get(self, index):
        """Get a copy of the fields of a stored peak

        The model data is not copied, but referenced. Use
        :py:meth:`fit.FitData.get_peak` to get an independent copy.

        Parameters
        ----------
        index : int
            Storage index

        Returns
        -------
        Peak
            Peak data
        """
        self._check_index(index)
        ret = Peak(self.n_params)
        for f in Peak.int_fields:
            setattr(ret, f, int(self._arrays[f][index]))
        for f in Peak.float_fields:
            setattr(ret, f, float(self._arrays[f][index]))
        for f in Peak.vector_fields:
            getattr(ret, f)[:] = self._arrays[f][index]
        psf = self._arrays["psf"][index]
        ret.psf = np.zeros((0, 0)) if psf is None else psf.copy()
        ret.model_data = self._arrays["model_data"][index]
        return ret

    def put(self, index, peak):
        """Write peak data into the store

        Parameters
        ----------
        index : int
            Storage index
        peak : Peak
            Data to store. The model data is stored by reference.

        Returns
        -------
        object
            Model data which was stored before
        """
        self._check_index(index)
        for f in Peak.int_fields + Peak.float_fields + Peak.vector_fields:
            self._arrays[f][index] = getattr(peak, f)
        self._arrays["psf"][index] = peak.psf.copy()
        old = self._arrays["model_data"][index]
        self._arrays["model_data"][index] = peak.model_data
        return old

    def fill(self, name, value):
        """Set a field to the same value for all stored peaks"""
        self._arrays[name][:self._n] = value

    def field(self, name):
        """Read-only view of a field for all stored peaks

        Parameters
        ----------
        name : str
            Field name, e.g. "status" or "params"

        Returns
        -------
        numpy.ndarray
            Field values. The first axis runs over peaks.
        """
        ret = self._arrays[name][:self._n].view()
        ret.flags.writeable = False
        return ret

    def running(self):
        """Indices of peaks whose status is "running"

        Returns
        -------
        numpy.ndarray
        """
        return np.nonzero(self._arrays["status"][:self._n] ==
                          status.running)[0]

    def compact(self, keep):
        """Remove entries, keeping storage capacity

        Parameters
        ----------
        keep : array-like of bool
            Which of the entries to keep. Kept entries are moved to the front
            preserving their order.
        """
        keep = np.asarray(keep, dtype=bool)
        n_keep = np.count_nonzero(keep)
        for a in self._arrays.values():
            a[:n_keep] = a[:self._n][keep]
            if a.dtype == object:
                a[n_keep:self._n] = None
        self._n = n_keep

    def clear(self):
        """Remove all entries, keeping storage capacity"""
        self._arrays["psf"][:self._n] = None
        self._arrays["model_data"][:self._n] = None
        self._n = 0
