"""Setup configuration for impactsync"""

from setuptools import setup, find_packages

setup(
    name="pr-impact-ingest",
    version="0.1.0",
    description=(
        "CLI and service layer that ingests merged GitHub pull requests into "
        "SQLite and computes per-author impact leaderboards."
    ),
    author="PR Impact Ingest Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "pr-impact-ingest=impactsync.main:main",
        ],
    },
)
