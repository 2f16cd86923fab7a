# SPDX-FileCopyrightText: 2020 Lukas Schrangl <lukas.schrangl@tuwien.ac.at>
#
# SPDX-License-Identifier: BSD-3-Clause

from setuptools import setup, find_packages


setup(
    name="multifit",
    version="0.1.0",
    description="Iterative fitting of overlapping peaks in microscopy images",
    python_requires=">=3.9",
    install_requires=["numpy>=1.10",
                      "pandas",
                      "scipy>0.18",
                      "pyyaml",
                      "numba", ],
    extras_require={"test": ["pytest"]},
    packages=find_packages(include=["multifit*"]),
)
