import setuptools

short_description = """
Tensor ring decompositions of large tensors by sampled alternating least squares.
"""


long_description = short_description

setuptools.setup(
    name="tr_sketch",
    version="0.1",
    description=short_description,
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["tr_sketch", "tr_sketch.*"]),
    python_requires=">=3.8",
    install_requires=[
        "numpy",
        "scipy",
    ],
    extras_require={
        "test": [
            "mypy",
            "pycodestyle",
            "pytest",
            "pytest-cov",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Mathematics",
    ],
    keywords="mathematics tensors tensor-ring linear-algebra sketching",
)
