#!/usr/bin/env python3
"""
Setup script for ship

Installs the `ship` command and its runtime dependencies.
"""

from setuptools import setup, find_packages

setup(
    name="ship-cli",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.2",
        "rich>=13.0",
        "pyyaml>=6.0",
        "httpx>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        'console_scripts': [
            'ship=ship_cli.cli:main',
        ],
    },
    include_package_data=True,
    zip_safe=False,
    python_requires='>=3.11',
)
