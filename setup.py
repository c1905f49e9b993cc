from setuptools import setup, find_packages


setup(
    name="strategos",
    version="0.1",
    packages=find_packages(include=["strategos", "strategos.*"]),
    description="Inspect, extract, verify and query Engram, Cartridge, DataSpool and DataCard archives.",
    author="vercingetorx",
    python_requires=">=3.11",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
        "zstandard>=0.22.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "strategos=strategos.cli:main",
        ]
    },
)
