# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Core utilities shared by the workflow engine.

This package contains:
- config: YAML-backed immutable configuration
- errors: error hierarchy surfaced to callers
- logging: structured JSON logging
"""
