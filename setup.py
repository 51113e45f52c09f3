"""
Setup script for nodeflow
"""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

_test_deps = [
    "pytest>=7.0.0,<9",
    "httpx>=0.24.0,<1",
]

setup(
    name="nodeflow-core",
    version="0.1.0",
    author="nodeflow",
    description="Workflow execution engine - typed node graphs, bounded concurrency, execution traces",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["nodeflow", "nodeflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.100.0,<1",
        "uvicorn>=0.23.0,<1",
        "pydantic>=2.0.0,<3",
        "requests>=2.31.0,<3",
        "python-dotenv>=1.0.0,<2",
        "click>=8.0.0,<9",
        "rich>=13.0.0,<15",
        "typing_extensions>=4.5.0",
        "jsonpath-ng>=1.6.0,<2",
        "tenacity>=8.3.0,<10",
    ],
    extras_require={
        "test": _test_deps,
    },
    entry_points={
        "console_scripts": [
            "nodeflow-core=nodeflow.cli.main:cli",
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
