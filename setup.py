"""
pairterm - Paired remote shell sessions over SSH for handheld clients.
"""

from setuptools import setup, find_packages
from pathlib import Path

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name="pairterm",
    version="0.1.0",
    description="Visual-code pairing and resilient SSH shell sessions for remote terminals",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["pairterm", "pairterm.*"]),
    python_requires=">=3.10",
    install_requires=[
        "paramiko>=3.0.0",
        "cryptography>=41.0.0",
        "PyYAML>=6.0",
        "click>=8.0.0",
        "qrcode>=7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pairterm=pairterm.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
        "Topic :: Terminals",
    ],
    keywords="ssh terminal pairing paramiko remote shell",
)
