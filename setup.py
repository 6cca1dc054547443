"""
dualsub — setuptools build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Run:
    dualsub translate --chunks output/intermediates/chunk_info.json
"""

from setuptools import setup

setup(
    name="dualsub",
    version="1.0.0",
    description="LLM chunk translation orchestrator for dual-language subtitles",
    packages=[
        "dualsub",
        "dualsub.core",
        "dualsub.cli",
    ],
    install_requires=[
        "requests>=2.28.0",
        "tqdm>=4.60",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "dualsub=dualsub.cli.cli_main:main",
        ],
    },
)
