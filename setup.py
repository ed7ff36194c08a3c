"""
Setup file.
"""

import os

from setuptools import find_packages, setup

URL = "https://github.com/zackees/rocksbuild"
KEYWORDS = "rocksdb snappy spdk cffi bindings build compiler toolchain native static-library"
HERE = os.path.dirname(os.path.abspath(__file__))

VERSION = "0.1.0"

INSTALL_REQUIRES = [
    "requests>=2.28",
    "tqdm>=4.64",
    "psutil>=5.9",
    "cffi>=1.15",
    "pycparser>=2.21",
]

TEST_REQUIRES = [
    "pytest>=7.0",
]


if __name__ == "__main__":
    setup(
        name="rocksbuild",
        version=VERSION,
        description="Builds RocksDB (with Snappy and optional SPDK) from source and generates cffi bindings",
        maintainer="Zachary Vorhies",
        keywords=KEYWORDS,
        url=URL,
        python_requires=">=3.8",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        install_requires=INSTALL_REQUIRES,
        extras_require={"test": TEST_REQUIRES},
        entry_points={
            "console_scripts": [
                "rocksbuild=rocksbuild.cli:main",
            ],
        },
        package_data={"rocksbuild": ["assets/*.txt"]},
        include_package_data=True)
