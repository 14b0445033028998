#!/usr/bin/env python3
"""
Setup script for modemfleet.
"""

from setuptools import setup, find_packages

setup(
    name="modemfleet",
    version="0.1.0",
    description="Detection, proxy port allocation and staggered bring-up for fleets of USB cellular modems",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Luke",
    license="MIT",
    packages=find_packages(exclude=["tests", "examples"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "pyserial>=3.5",
        "SQLAlchemy>=2.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-timeout>=2.1.0",
        ],
        "postgres": [
            "psycopg2-binary>=2.9",
        ],
    },
    entry_points={
        "console_scripts": [
            "modemfleet=modemfleet.cli:main",
        ],
    },
    keywords=["quectel", "ec25", "modem", "fleet", "usb", "proxy", "qmi", "4g", "lte"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: Communications",
        "Topic :: System :: Hardware :: Hardware Drivers",
        "Operating System :: POSIX :: Linux",
        "License :: OSI Approved :: MIT License",
    ],
)
