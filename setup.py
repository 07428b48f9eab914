#!/usr/bin/env python3
"""
Inference Gateway - Setup Script
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="inference-gateway",
    version="1.0.0",
    description="Unified gateway over remote (Ollama) and on-device (llama.cpp) LLM backends",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "dev": ["black", "isort", "mypy", "ruff", "pre-commit"],
        "test": ["pytest", "pytest-asyncio>=0.23", "pytest-cov", "respx", "hypothesis"],
        "llamacpp": ["llama-cpp-python>=0.2.0"],
    },
    entry_points={
        "console_scripts": [
            "inference-gateway=main:run",
        ],
    },
)
