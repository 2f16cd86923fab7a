# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

"""Names and indices of peak parameters, fit status values and exported
properties

Attributes
----------
peak_params : list of str
    Names of the fitted parameters of a peak in the order in which they are
    stored (height, center coordinates, widths, background, z position)
extra_params : list of str
    Names of the additional result columns (fit status, fit error)
all_params : list of str
    concatenation of the above
col_nums : named tuple
    Each entry in `all_params` with its corresponding column number.
status : types.SimpleNamespace
    Fit status. running, converged, error
diagnostics_names : list of str
    Names of the diagnostics counters of a fit session
"""
import collections
import types


peak_params = ["height", "x", "xwidth", "y", "ywidth", "background", "z"]
extra_params = ["status", "error"]
all_params = peak_params + extra_params

ColumnNums = collections.namedtuple("ColumnNums", all_params)
col_nums = ColumnNums(**{k: v for v, k in enumerate(all_params)})

num_peak_params = len(peak_params)

status = types.SimpleNamespace(running=0, converged=1, error=2)

diagnostics_names = [
    "n_dposv",          # reset due to failure to solve the normal equations
    "n_iterations",     # number of iterations
    "n_lost",           # lost altogether (lambda hit its maximum)
    "n_margin",         # too close to the image edge
    "n_neg_fi",         # negative model value
    "n_neg_height",     # height below minimum
    "n_neg_width",      # non-positive width
    "n_non_converged",  # still running at the end of a fit
    "n_non_decr",       # restarts due to non-decreasing error
]

# Properties which can be exported for all peaks of a session. Parameters
# are reported in external units (e.g. sigma instead of the exponential
# factor for Gaussians).
float_properties = {
    **{name: ("params", i) for i, name in enumerate(peak_params)},
    "error": ("error", None),
    "lambda": ("lambda_", None),
    "sum": ("sum", None),
    "bg_sum": ("bg_sum", None),
}
int_properties = {
    "status": ("status", None),
    "iterations": ("iterations", None),
    "index": ("index", None),
    "xi": ("xi", None),
    "yi": ("yi", None),
    "size_x": ("size_x", None),
    "size_y": ("size_y", None),
}
property_aliases = {
    "x-center": "x",
    "x-width": "xwidth",
    "y-center": "y",
    "y-width": "ywidth",
    "z-center": "z",
}
