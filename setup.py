# setup.py
from setuptools import setup, find_packages

setup(
    name="pumpcurve",
    version="0.1.0",
    packages=find_packages(),
    install_requires=[
        "msgpack",            # record serialization
        "plyvel",             # LevelDB storage
        "cryptography",       # ECDSA caller verification
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "pumpcurve=pumpcurve.cli:main",
        ],
    },
)
