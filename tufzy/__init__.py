# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""tufzy: storage backends and layout tools for TUF clients
"""

# This value is used in the requests user agent.
__version__ = "0.1.0"
