#!/usr/bin/env python3
"""
HelpBoard Deployer - Package Setup

Install with: pip install -e .
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="helpboard-deployer",
    version="1.0.0",
    author="HelpBoard",
    author_email="",
    description="Single-host deployment orchestrator for the HelpBoard support platform",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["helpboard_deployer", "helpboard_deployer.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0.1",
        "requests>=2.31.0",
        "rich>=13.7.0",
        "python-dotenv>=1.0.0",
        "psycopg2-binary>=2.9.9",
        "cryptography>=42.0.0",
        "bcrypt>=4.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "helpboard-deploy=helpboard_deployer.__main__:main",
        ],
    },
)
