#!/usr/bin/env python
from setuptools import setup


setup(
    name="mockledger",
    version="0.1.0",
    description="Thread-safe mock objects with an expectation ledger, "
                "call counts, ordering and atomic checkpoints.",
    license="BSD",
    py_modules=["mockledger"],
    python_requires=">=3.6",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Software Development :: Testing",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
