from __future__ import annotations

from pathlib import Path

import setuptools

__version_tag__ = "0.3.dev"

setup_kwargs = {
    "name": "predict-refine",
    "version": __version_tag__,
    "long_description": Path(__file__).parent.joinpath("README.md").read_text(),
    "long_description_content_type": "text/markdown",
    "description": "Refinement of crystal and detector geometry for still diffraction images",
    "license": "BSD-3-Clause",
    "packages": setuptools.find_packages(where="src"),
    "package_dir": {"": "src"},
    "python_requires": ">=3.9",
    "install_requires": [
        "cctbx-base",
        "colorlog",
        "numpy",
        "tabulate",
    ],
    "extras_require": {
        "test": ["pytest"],
    },
    "classifiers": [
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: BSD License",
        "Natural Language :: English",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: Implementation :: CPython",
    ],
}

setuptools.setup(**setup_kwargs)
