#!/usr/bin/env python3
"""
Setup configuration for songbook-sync
Offline-first caching and sync engine for a songbook reader
"""

from setuptools import setup, find_packages

# Core requirements (always installed)
core_requirements = [
    "aiohttp>=3.9.1",
    "asyncio-throttle>=1.0.2",
    "click>=8.1.7",
    "rich-click>=1.7.0",
    "pyyaml>=6.0.1",
    "tqdm>=4.66.1",
    "python-dotenv>=1.0.0",
]

test_requirements = [
    "pytest>=7.4.3",
    "pytest-asyncio>=0.21.1",
]

setup(
    name="songbook-sync",
    version="0.1.0",
    author="songbook-sync Team",
    description="Offline-first caching and sync engine for a hymnal/songbook reader",
    packages=find_packages(include=["songbook_sync", "songbook_sync.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Framework :: AsyncIO",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database :: Front-Ends",
    ],
    python_requires=">=3.10",
    install_requires=core_requirements,
    extras_require={
        "test": test_requirements,
        "dev": test_requirements + [
            "black>=23.11.0",
            "flake8>=6.1.0",
            "mypy>=1.7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "songbook=songbook_sync.cli:main",
        ],
    },
    keywords="songbook hymnal offline cache sync firebase",
)
