"""
Setup script for Nalid24 - Ephemeral two-party messenger core.

This package provides:
- QR code based contact exchange with a bidirectional handshake
- Client-side AES-256-GCM message encryption
- Messages that expire after 24 hours
- Monotonic delivery and read receipts
- Presence tracking with server-side disconnect hooks
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='nalid24-core',
    version='1.0.0',
    description='Core of an ephemeral two-party messenger: QR contact exchange, encrypted expiring messages, receipts and presence',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.10',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
        "tomli>=2.0.1; python_version<'3.11'",
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'nalid24=nalid24.main:main',
        ],
    },
)
