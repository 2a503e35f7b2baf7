"""Setup script for cadence package."""

from setuptools import find_packages, setup

setup(
    name="cadence",
    version="0.1.0",
    description="Per-project cron and event scheduler for background agent jobs",
    packages=find_packages(include=["cadence", "cadence.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "croniter>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cadence-scheduler=cadence.daemon:main",
            "cadence-worker=cadence.worker:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
