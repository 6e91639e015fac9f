from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

install_requires = [
    "aiohttp==3.12.15",
    "aiohttp-socks==0.10.1",
]

setup(
    name="tor-health-sidecar",
    version="0.1.0",
    description="Tor control-port health sidecar with readiness endpoints and webhook notifications",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=install_requires,
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "ruff>=0.1.0",
        ],
    },
    license="MIT",
    entry_points={
        "console_scripts": [
            "tor-health-sidecar = tor_health_sidecar.main:cli",
        ],
    },
)
