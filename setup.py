#!/usr/bin/env python3
from setuptools import setup, find_packages
import os
import sys

# Add src to path so we can import the version
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))
from open_agent_proxy.version import __version__

setup(
    name='open-agent-proxy',
    version=__version__,
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "python-dotenv",
        "agent-client-protocol>=0.4,<0.5",
    ],
    extras_require={
        'test': [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
    entry_points={
        'console_scripts': [
            'oap=open_agent_proxy.cli:main',
        ],
    },
    description='OpenAI chat completions server that forwards requests to an Agent Client Protocol agent',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Environment :: Web Environment',
    ],
    python_requires='>=3.10',
)
