"""
Test suite for RecitationCache.

Unit tests for the content store, statistics, readiness, connectivity and
formatting components, plus integration tests of the cache manager facade.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
"""
