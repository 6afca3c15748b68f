from setuptools import setup, find_packages

setup(
    name="mpyfs",
    version="0.2.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.11",
    install_requires=[
        "mpremote==1.25.0",
        "pyserial>=3.5", # serial.tools.list_ports is part of pyserial
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "mpyfs=mpyfs.dm:main",
        ],
    },
    include_package_data=True,
)
