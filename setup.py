"""Setup configuration for ledgerq."""

from setuptools import setup, find_packages

setup(
    name="ledgerq",
    version="1.0.0",
    description="Retrying ledger writer for exchange trade and funding events",
    author="Your Name",
    packages=find_packages(include=["ledgerq", "ledgerq.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "ledgerq=ledgerq.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
