from setuptools import setup, find_packages

setup(
    name="mmanalysis",
    version="0.1.0",
    description="Linear mixed models, moderation, post-hoc contrasts and DID with multiple imputation",
    long_description=open("README.md").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(include=["mmanalysis", "mmanalysis.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Mathematics",
    ],
    python_requires=">=3.9",
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.22.0",
        "matplotlib>=3.5.0",
        "statsmodels>=0.14.0",
        "scipy>=1.9.0",
        "patsy>=0.5.3",
    ],
    extras_require={
        "dev": ["pytest"],
    },
)
