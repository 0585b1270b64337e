from setuptools import setup, find_packages

setup(
    name="mwdc_reco",
    version="0.1.0",
    description="Road finding and straight-line fitting for multi-wire drift chambers",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["mwdc_reco", "mwdc_reco.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "networkx",
        "orjson",
    ],
    extras_require={
        # Optional speed/profiling stack
        "speed": [
            "scalene>=1.5.49; platform_system != 'Windows'",
            "py-spy>=0.3.14",
        ],
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for mwdc_reco/main.py
            "mwdc-reco=mwdc_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
