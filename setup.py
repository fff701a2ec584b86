from setuptools import setup, find_namespace_packages
import os


def read(fname):
    with open(os.path.join(os.path.dirname(__file__), fname)) as fh:
        return fh.read()


NAME = "PG-HAP"
VERSION = "0.1.0"
AUTHORS = "Bradley T. Martin and Tyler K. Chafin"
AUTHOR_EMAIL = "evobio721@gmail.com"
MAINTAINER = "Bradley T. Martin"
DESCRIPTION = "Python package to impute missing SNPs from donor haplotype panels"
LONG_DESCRIPTION = read("README.md")

setup(
    name=NAME,
    version=VERSION,
    author=AUTHORS,
    author_email=AUTHOR_EMAIL,
    maintainer=MAINTAINER,
    maintainer_email=AUTHOR_EMAIL,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    keywords=[
        "python",
        "impute",
        "imputation",
        "imputer",
        "haplotype",
        "hidden markov model",
        "viterbi",
        "donor",
        "genotype",
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Operating System :: OS Independent",
        "Natural Language :: English",
    ],
    license="GNU General Public License v3 (GPLv3)",
    packages=find_namespace_packages(include=["pghap", "pghap.*"]),
    python_requires=">=3.10,<4",
    install_requires=[
        "matplotlib",
        "seaborn",
        "scikit-learn>=1.0",
        "pandas",
        "numpy>=2.0",
        "pyyaml",
        "rich",
        "snpio",
    ],
    extras_require={
        "tests": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "pghap=pghap.cli:main",
        ],
    },
    include_package_data=True,
)
