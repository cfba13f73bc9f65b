"""
TubeScribe — setuptools build script.

Usage:
    # Development install (with test tools):
    pip install -e ".[test]"

    # Then:
    python3 main.py diagnostics

yt-dlp's pip package provides the yt-dlp executable. ffmpeg must be installed
separately. The browser used for cookie refresh is fetched once with:
    playwright install chromium
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "tubescribe"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="YouTube audio transcription with a local Whisper model",
    packages=find_namespace_packages(include=["tubescribe", "tubescribe.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "numpy>=1.24",
        "yt-dlp>=2024.1.0",
        "transformers>=4.36",
        "torch>=2.0",
        "playwright>=1.40",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "tubescribe=main:main",
        ],
    },
    python_requires=">=3.10",
)
