from setuptools import setup, find_packages

with open("README.rst", "r") as f:
    readme = f.read()

setup(
    name="kalmanlie",
    version="0.1.0",
    description="Extended, square-root, invariant and unscented Kalman filters on SE(3).",
    long_description=readme,
    packages=find_packages(exclude=["tests*", "examples*"]),
    extras_require={"test": ["pytest"]},
    install_requires=[
        "numpy>=1.21.2",
        "scipy>=1.7.1",
        "matplotlib>=3.4.3",
        "joblib>=1.2.0",
        "pymlg @ git+https://github.com/decargroup/pymlg@main",
        "tqdm>=4.64.1",
        "seaborn>=0.11.2",
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
