# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Shared test utilities"""

import asyncio
from contextlib import asynccontextmanager


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll an async predicate until it returns something truthy"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@asynccontextmanager
async def running(*services):
    """Start queue/scheduler style services for the duration of a test"""
    for service in services:
        await service.start()
    try:
        yield
    finally:
        for service in reversed(services):
            await service.stop()
