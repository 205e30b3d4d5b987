"""
Frontier storage policies for the crawl engine.
"""

from .frontier_policy import FrontierPolicy, AllowAll, RedisSeenFilter

__all__ = ['FrontierPolicy', 'AllowAll', 'RedisSeenFilter']
