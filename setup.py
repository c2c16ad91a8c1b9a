#!/usr/bin/env python3

from setuptools import setup, find_packages

setup(
    name="reforger-ctrl",
    version="1.0.0",
    description="Arma Reforger Dedicated Server Control Tool",
    author="JustAmply",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "asyncssh>=2.13",
        "croniter>=1.4",
        "psutil>=5.9",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        'console_scripts': [
            'reforger-ctrl=reforger_ctrl.cli:main',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
