"""Hearth — realtime event distribution and lazy background workers.

The infrastructure layer behind the Hearth household app (recipes,
groceries, calendar): a per-connection Redis subscription multiplexer,
policy-based event emission, cross-process session invalidation, and
Redis-backed job queues whose workers start on demand and go away when idle.
"""

__version__ = "0.1.0"
