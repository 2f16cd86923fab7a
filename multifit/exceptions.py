# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Collection of exception classes"""
import numpy as np


class SolveFailure(np.linalg.LinAlgError):
    """The normal equations could not be solved

    Raised if the (damped) Hessian is not positive definite. The iteration
    controller recovers from this by increasing the damping of the peak.
    """
    def __init__(self, text="Matrix is not positive definite"):
        super().__init__(text)


class StorageError(MemoryError):
    """Peak storage could not be grown

    Attributes
    ----------
    capacity
        Number of peaks which was requested
    """
    def __init__(self, capacity, text=None):
        """Parameters
        ----------
        capacity : int
            Set the :py:attr:`capacity` attribute.
        text : str, optional
            What to display when converting the exception to a str
        """
        if text is None:
            text = "Could not allocate storage for {} peaks".format(capacity)
        super().__init__(text)
        self.capacity = capacity
