"""
distcrawl

A distributed web crawl engine: a Redis-backed, domain-partitioned work
queue shared by any number of crawler processes, each running a bounded
pool of fetch/parse workers.
"""

__version__ = "1.0.0"
__description__ = "Distributed web crawl orchestration over a durable work queue"
