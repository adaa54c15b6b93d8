"""
Setup script for installing NetGuard.

Usage:
    pip install -e .[test]

Installs the netguard console script.
"""
from setuptools import setup

PACKAGES = [
    'app',
    'config',
    'discovery',
    'storage',
    'wifi',
]

setup(
    name='netguard',
    version='1.0.0',
    description='Wi-Fi network scanning and LAN device discovery service',
    python_requires='>=3.9',
    packages=PACKAGES,
    py_modules=['netguard'],
    install_requires=[
        'psutil>=5.9.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'netguard=netguard:main',
        ],
    },
)
