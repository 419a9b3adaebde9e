# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for the FlowEngine workflow execution service
"""

from setuptools import setup, find_packages

setup(
    name="flowengine",
    version="0.1.0",
    description="Workflow execution engine with task queue, approvals and cron/webhook triggers",
    author="Jason Cafarelli",
    packages=find_packages(include=["flowengine", "flowengine.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.110.0",
        "pydantic>=2.0.0",
        "httpx>=0.25.0",
        "pyyaml>=6.0",
        "aiofiles>=23.1.0",
        "croniter>=1.4.0",
        "uvicorn>=0.23.0",
        "tzdata>=2023.3",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "flowengine=flowengine.main:main",
        ]
    },
)
