"""
Version information for RecitationCache.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Kasim Lyee"
__email__ = "lyee@codewithlyee.com"
__company__ = "Softlite Inc."
