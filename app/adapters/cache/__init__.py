"""Response cache adapters.

The package exposes one async contract with two stores behind it: an
in-process TTL/LRU map and a Redis store that degrades to the in-process map
while Redis is unreachable.
"""
