#!/usr/bin/env python

from setuptools import setup, find_namespace_packages

setup(
    name="ssdp-discovery",
    version="1.0.0",
    description="SSDP service discovery: multicast listening, search probes and descriptor caching",
    packages=find_namespace_packages("src", include=["ssdp_discovery*"]),
    package_data={"": ["py.typed"]},
    install_requires=("requests", "psutil", "rich"),
    extras_require={"test": ["pytest", "hypothesis"]},
    python_requires=">=3.10",
    entry_points={
        "console_scripts": ["ssdp-discovery-list=ssdp_discovery.list_cli:main"],
    },
    package_dir={"": "src"},
)
