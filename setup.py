#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1-or-later

from setuptools import setup, find_packages


setup(
    name="imgbuild",
    version="1",
    description="Install packages into bootable disk images",
    license="LGPLv2+",
    python_requires=">=3.9",
    packages = find_packages(".", exclude=["tests", "tests.*"]),
    extras_require = { "test": ["pytest"] },
    entry_points = { "console_scripts": ["imgbuild = imgbuild.__main__:main"] },
)
