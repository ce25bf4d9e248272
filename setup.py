"""
venuemap — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run the worker:
    venuemap worker
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "venuemap"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Queue worker that finds and geocodes the venue shown in a short video",
    packages=find_namespace_packages(include=["venuemap", "venuemap.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "google-genai>=1.0.0",
        "python-dotenv>=1.0.0",
        "yt-dlp>=2024.1.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "venuemap=main:main",
        ],
    },
)
