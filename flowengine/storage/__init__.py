# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

from .store import Store, MemoryStore, JsonFileStore, create_store

__all__ = ["Store", "MemoryStore", "JsonFileStore", "create_store"]
