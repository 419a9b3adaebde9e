# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Clients for the engine's external collaborators: AI providers, the code
sandbox and the credential store.
"""
